"""JSON utilities: numpy-safe encoding and atomic writes."""

import json
import math
import os
import tempfile
from pathlib import Path

import numpy as np


class NumpyEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy scalars and arrays.

    Usage::

        json.dump(data, f, cls=NumpyEncoder)
    """

    def default(self, obj):
        if isinstance(obj, np.bool_):
            return bool(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            v = float(obj)
            return None if math.isnan(v) or math.isinf(v) else v
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def atomic_json_dump(data, filepath, cls=NumpyEncoder, indent=2):
    """Write JSON through a temp file and os.replace() so the target is never partial.

    Args:
        data: Python object to serialize
        filepath: Target path (str or Path)
        cls: JSON encoder class
        indent: Indentation passed to json.dump
    """
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=filepath.parent, suffix='.tmp')
    try:
        with os.fdopen(fd, 'w') as f:
            json.dump(data, f, cls=cls, indent=indent)
        os.replace(tmp_path, filepath)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
