"""Package rendering: export collection, template rendering, orchestration."""

from .manager import (
    BackupManager,
    DiscoveredPackage,
    RenderOptions,
    RenderResult,
    discover_installed_packages,
    filter_packages_by_options,
    plan_and_render,
)
from .renderer import TEMPLATE_SUFFIX, render_template_text

__all__ = [
    "BackupManager",
    "DiscoveredPackage",
    "RenderOptions",
    "RenderResult",
    "TEMPLATE_SUFFIX",
    "discover_installed_packages",
    "filter_packages_by_options",
    "plan_and_render",
    "render_template_text",
]
