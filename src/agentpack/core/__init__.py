"""Configuration, manifests, lockfiles and path safety."""
