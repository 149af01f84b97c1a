import io
import sys
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

# Add the repository root to sys.path so the top-level modules import
ROOT_PATH = Path(__file__).resolve().parent.parent
if ROOT_PATH.as_posix() not in sys.path:
    sys.path.insert(0, ROOT_PATH.as_posix())

from avatar import Bitmap  # noqa: E402

WHITE = (255, 255, 255, 255)
BLACK = (0, 0, 0, 255)


def solid_array(width, height, color):
    arr = np.zeros((height, width, 4), dtype=np.uint8)
    arr[:, :] = color
    return arr


@pytest.fixture
def scenario_sheet():
    """64x64 white sheet, black square over (20,20)-(40,40), stray white pixel at (30,30)."""
    arr = solid_array(64, 64, WHITE)
    arr[20:41, 20:41] = BLACK
    arr[30, 30] = WHITE
    return Bitmap.from_array(arr)


@pytest.fixture
def random_sheet():
    """Noisy sheet of pure black/white pixels with odd dimensions."""
    rng = np.random.default_rng(7)
    values = rng.choice([0, 255], size=(23, 31), p=[0.45, 0.55]).astype(np.uint8)
    arr = np.zeros((23, 31, 4), dtype=np.uint8)
    arr[:, :, 0] = values
    arr[:, :, 1] = values
    arr[:, :, 2] = values
    arr[:, :, 3] = 255
    return Bitmap.from_array(arr)


@pytest.fixture
def png_bytes():
    img = Image.new("RGBA", (8, 6), WHITE)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
