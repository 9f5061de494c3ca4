"""
Schemas for files written by digislide.

Uses Pydantic for validation with clear error messages.

Usage:
    from digislide.utils.schemas import load_core_file

    registry = load_core_file("/path/to/slide_cores.json")
    for core in registry.cores:
        print(core.id, core.center_x, core.center_y)
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from digislide.errors import InvalidParameter


class CoreRecord(BaseModel):
    """One TMA core in level-0 pixels."""
    id: int = Field(..., ge=1)
    center_x: float
    center_y: float
    radius: float = Field(..., ge=0)


class DetectionParametersRecord(BaseModel):
    core_diameter: float = Field(..., gt=0, description="Core diameter in mm")
    radius_tolerance: float = Field(..., ge=0, le=100)
    strictness: float = Field(..., ge=0, le=100)
    target_core_diameter_pixels: float = Field(..., gt=0)


class CoreRegistryFile(BaseModel):
    """Schema for *_cores.json files."""
    slide: str
    created: str = Field(default_factory=lambda: datetime.now().isoformat(timespec='seconds'))
    detection_level: Optional[int] = Field(None, ge=0)
    level0_spacing_mm: Optional[List[float]] = Field(None, min_length=2, max_length=2)
    parameters: DetectionParametersRecord
    cores: List[CoreRecord] = Field(default_factory=list)

    @field_validator('created')
    @classmethod
    def validate_created(cls, v: str) -> str:
        datetime.fromisoformat(v)
        return v

    @model_validator(mode='after')
    def check_ids(self) -> "CoreRegistryFile":
        """Core ids must run 1..N in order."""
        ids = [core.id for core in self.cores]
        if ids != list(range(1, len(ids) + 1)):
            raise ValueError(f"Core ids must be 1..{len(ids)} in order, got {ids[:10]}")
        return self


def load_core_file(file_path: Union[str, Path]) -> CoreRegistryFile:
    """
    Load and validate a core registry file.

    Raises:
        FileNotFoundError: If the file does not exist
        InvalidParameter: If the file is not valid JSON or fails validation
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")

    try:
        with open(file_path, 'r') as f:
            data = json.load(f)
        return CoreRegistryFile.model_validate(data)
    except json.JSONDecodeError as e:
        raise InvalidParameter(f"Invalid JSON in {file_path}: {e}",
                               operation="load_core_file") from e
    except ValidationError as e:
        raise InvalidParameter(f"Validation failed for {file_path}: {e}",
                               operation="load_core_file") from e
