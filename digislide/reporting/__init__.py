"""Visual reports: TMA core overlays."""

from .overlay import draw_tma_cores, save_overlay

__all__ = ['draw_tma_cores', 'save_overlay']
