"""Home directory resolution for agentpack."""

from agentpack.runtime.home import get_agentpack_home, get_store_dir

__all__ = ["get_agentpack_home", "get_store_dir"]
