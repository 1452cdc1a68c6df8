"""Output surfaces for managed processes."""

from __future__ import annotations

from nvim_updater.surfaces.base import NullSurface, Surface
from nvim_updater.surfaces.console import ConsoleSurface

__all__ = [
	"ConsoleSurface",
	"NullSurface",
	"Surface",
]
