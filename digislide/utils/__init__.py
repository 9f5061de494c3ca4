"""
Utility modules for digislide.

Provides:
- Configuration management
- Logging utilities
- JSON helpers
- Core registry schemas (pydantic)
"""

from .config import (
    DEFAULT_CONFIG,
    DEFAULT_PATHS,
    DETECTION_DEFAULTS,
    get_default_path,
    get_detection_defaults,
    load_config,
    save_config,
    validate_config,
)

from .logging import (
    get_logger,
    setup_logging,
    log_parameters,
    ProcessingTimer,
)

from .json_utils import NumpyEncoder, atomic_json_dump

from .schemas import CoreRecord, CoreRegistryFile, load_core_file

__all__ = [
    # Config
    'DEFAULT_CONFIG',
    'DEFAULT_PATHS',
    'DETECTION_DEFAULTS',
    'get_default_path',
    'get_detection_defaults',
    'load_config',
    'save_config',
    'validate_config',
    # Logging
    'get_logger',
    'setup_logging',
    'log_parameters',
    'ProcessingTimer',
    # JSON
    'NumpyEncoder',
    'atomic_json_dump',
    # Schemas
    'CoreRecord',
    'CoreRegistryFile',
    'load_core_file',
]
