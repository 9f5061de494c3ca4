"""
digislide: uniform access to multi-resolution digital slides and TMA core detection.

Usage:
    from digislide.slide import DigitalSlide
    from digislide.io import TepisClient, openslide_source
    from digislide.processing import ALL, Last, Indices
    from digislide.detection import DetectionParameters, frst, nonmaxsupp
    from digislide.utils import get_logger, setup_logging, load_config
"""

# Version
__version__ = "0.1.0"

# Individual modules should be imported explicitly:
#   from digislide.slide import DigitalSlide
#   from digislide.errors import NotDetected

__all__ = [
    "io",
    "processing",
    "detection",
    "reporting",
    "utils",
    "slide",
    "display",
    "errors",
    "cli",
]
