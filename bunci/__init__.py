"""bunci: macOS VM image lifecycle and build-cache control plane for Bun CI.

Decides, for a target (macOS release, arch, Bun version, bootstrap version),
whether a local image, a registry image or a fresh bootstrap should serve
the next build, and keeps compiled-artifact caches keyed by source content.
"""

__version__ = "0.1.0"
__description__ = "macOS VM image lifecycle and build-cache control plane for Bun CI"

__all__ = ["__version__"]
