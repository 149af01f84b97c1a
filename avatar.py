#!/usr/bin/env python3
import argparse
import enum
import io
import logging
import sys
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

logger = logging.getLogger(__name__)

DIAGNOSTICS = False

THRESHOLD = 30
DEFAULT_SCALE_PERCENT = 100
MAX_SOURCE_BYTES = 4 * 1024 * 1024
OUTLINE_COLOR = (255, 255, 255, 255)
FILL_COLOR = (0, 0, 0, 255)


## errors
class PipelineError(Exception):
    """Base class for everything the avatar pipeline raises."""


class InvalidBitmap(PipelineError, ValueError):
    pass


class InvalidParameter(PipelineError, ValueError):
    def __init__(self, parameter, message):
        super().__init__(f"{parameter}: {message}")
        self.parameter = parameter


class EncodingFailure(PipelineError):
    def __init__(self, index, message):
        super().__init__(f"frame {index + 1}: {message}")
        self.index = index


class StoreFailure(PipelineError):
    def __init__(self, key, message):
        super().__init__(f"{key}: {message}")
        self.key = key


## data model
@dataclass(frozen=True)
class Bitmap:
    """
    Immutable RGBA raster. 'pixels' is row-major, top-left origin,
    4 bytes per pixel (R, G, B, A).
    """
    width: int
    height: int
    pixels: bytes = field(repr=False)

    def validate(self) -> "Bitmap":
        if self.width <= 0 or self.height <= 0:
            raise InvalidBitmap(f"bitmap has no pixels: {self.width}x{self.height}")
        expected = self.width * self.height * 4
        if len(self.pixels) != expected:
            raise InvalidBitmap(
                f"pixel buffer holds {len(self.pixels)} bytes, expected {expected} "
                f"for {self.width}x{self.height} RGBA"
            )
        return self

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "Bitmap":
        if arr.ndim != 3 or arr.shape[2] != 4:
            raise InvalidBitmap(f"expected an HxWx4 array, got shape {arr.shape}")
        h, w, _ = arr.shape
        return cls(w, h, np.ascontiguousarray(arr, dtype=np.uint8).tobytes())

    @classmethod
    def from_image(cls, img: Image.Image) -> "Bitmap":
        # Ensure we don't lose alpha info
        if img.mode != "RGBA":
            img = img.convert("RGBA")
        return cls(img.width, img.height, img.tobytes())

    def to_array(self) -> np.ndarray:
        """Writable (height, width, 4) copy of the pixels."""
        self.validate()
        arr = np.frombuffer(self.pixels, dtype=np.uint8)
        return arr.reshape(self.height, self.width, 4).copy()

    def to_image(self) -> Image.Image:
        self.validate()
        return Image.frombytes("RGBA", (self.width, self.height), self.pixels)

    @property
    def size(self):
        return self.width, self.height


class BackgroundMode(enum.Enum):
    NONE = "none"
    LIGHT = "light"
    DARK = "dark"

    @classmethod
    def parse(cls, value) -> "BackgroundMode":
        if isinstance(value, cls):
            return value
        aliases = {
            "none": cls.NONE,
            "light": cls.LIGHT,
            "light-background": cls.LIGHT,
            "white": cls.LIGHT,
            "dark": cls.DARK,
            "dark-background": cls.DARK,
            "black": cls.DARK,
        }
        try:
            return aliases[str(value).strip().lower()]
        except KeyError:
            raise InvalidParameter("background_mode", f"unknown mode {value!r}") from None


@dataclass(frozen=True)
class GridSpec:
    rows: int = 2
    cols: int = 2

    @property
    def total_frames(self) -> int:
        return self.rows * self.cols

    def cell(self, index: int):
        if not 0 <= index < self.total_frames:
            raise InvalidParameter("index", f"{index} is outside 0..{self.total_frames - 1}")
        return index // self.cols, index % self.cols


GRID = GridSpec(2, 2)


@dataclass(frozen=True)
class FrameParams:
    scale_percent: int = DEFAULT_SCALE_PERCENT
    caption_text: str = ""
    stroke_enabled: bool = True

    def validate(self) -> "FrameParams":
        _check_scale(self.scale_percent)
        return self


@dataclass(frozen=True)
class RenderedFrame:
    index: int
    bitmap: Bitmap


def _check_scale(scale_percent):
    # bool is an int subclass; True is not a scale
    if isinstance(scale_percent, bool) or not isinstance(scale_percent, int):
        raise InvalidParameter("scale_percent", f"expected an integer, got {scale_percent!r}")
    if scale_percent <= 0:
        raise InvalidParameter("scale_percent", f"must be > 0, got {scale_percent}")


## loader
def load_bitmap(source, max_bytes: int = MAX_SOURCE_BYTES) -> Bitmap:
    """
    Decodes a path, raw bytes or a binary file object into an RGBA Bitmap.
    Sources larger than 'max_bytes' are rejected before decoding.
    """
    if isinstance(source, (bytes, bytearray)):
        data = bytes(source)
    elif isinstance(source, (str, Path)):
        path = Path(source)
        try:
            if path.stat().st_size > max_bytes:
                raise InvalidParameter("source", f"{path} is larger than {max_bytes} bytes")
            data = path.read_bytes()
        except OSError as e:
            raise InvalidBitmap(f"cannot read {path}: {e}") from e
    else:
        data = source.read(max_bytes + 1)

    if len(data) > max_bytes:
        raise InvalidParameter("source", f"image is larger than {max_bytes} bytes")

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            bitmap = Bitmap.from_image(img)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        raise InvalidBitmap(f"could not decode source image: {e}") from e
    logger.debug("loaded %dx%d source (%d bytes)", bitmap.width, bitmap.height, len(data))
    return bitmap.validate()


## background extraction
def match_mask(arr: np.ndarray, mode: BackgroundMode, threshold: int = THRESHOLD) -> np.ndarray:
    """Per-pixel background predicate on RGB only; alpha is ignored."""
    rgb = arr[:, :, :3]
    if mode is BackgroundMode.LIGHT:
        return np.all(rgb > 255 - threshold, axis=2)
    if mode is BackgroundMode.DARK:
        return np.all(rgb < threshold, axis=2)
    return np.zeros(arr.shape[:2], dtype=np.bool_)


def background_mask(bitmap: Bitmap, mode, threshold: int = THRESHOLD) -> np.ndarray:
    """
    1) Marks every pixel matching the background predicate for 'mode'.
    2) Seeds a queue with every matching pixel on the outer border.
    3) Expands breadth-first through 4-connected matching neighbours.
    Returns the visited array (height, width): True => background.
    """
    mode = BackgroundMode.parse(mode)
    arr = bitmap.to_array()
    h, w, _ = arr.shape
    visited = np.zeros((h, w), dtype=np.bool_)
    if mode is BackgroundMode.NONE:
        return visited

    matches = match_mask(arr, mode, threshold)
    queue = deque()

    def seed(x, y):
        if matches[y, x] and not visited[y, x]:
            visited[y, x] = True
            queue.append((x, y))

    # --- Seed from the border ---
    for x in range(w):
        seed(x, 0)
        seed(x, h - 1)
    for y in range(h):
        seed(0, y)
        seed(w - 1, y)
    logger.debug("%s background: %d border seeds", mode.value, len(queue))

    # --- BFS ---
    while queue:
        x, y = queue.popleft()
        for nx, ny in ((x - 1, y), (x + 1, y), (x, y - 1), (x, y + 1)):
            if 0 <= nx < w and 0 <= ny < h:
                if not visited[ny, nx] and matches[ny, nx]:
                    visited[ny, nx] = True
                    queue.append((nx, ny))

    logger.debug("%s background: %d of %d pixels cleared", mode.value, int(visited.sum()), w * h)
    return visited


def extract_background(bitmap: Bitmap, mode) -> Bitmap:
    """
    Makes the border-connected background transparent.
    Matching colours enclosed by the subject keep their alpha.
    """
    bitmap.validate()
    mode = BackgroundMode.parse(mode)
    if mode is BackgroundMode.NONE:
        return Bitmap(bitmap.width, bitmap.height, bytes(bitmap.pixels))

    arr = bitmap.to_array()
    arr[background_mask(bitmap, mode), 3] = 0
    return Bitmap.from_array(arr)


## slicing
def scaled_size(width: int, height: int, scale_percent: int):
    """Half-up rounding of (width, height) * scale_percent / 100, at least 1x1."""
    _check_scale(scale_percent)
    out_w = (width * scale_percent + 50) // 100
    out_h = (height * scale_percent + 50) // 100
    return max(1, out_w), max(1, out_h)


def frame_box(size, grid: GridSpec, index: int):
    """Source crop box (left, top, right, bottom) of cell 'index' in sheet coordinates."""
    width, height = size
    frame_w, frame_h = width // grid.cols, height // grid.rows
    row, col = grid.cell(index)
    return col * frame_w, row * frame_h, (col + 1) * frame_w, (row + 1) * frame_h


def slice_frames(bitmap: Bitmap, grid: GridSpec = GRID, scale_percent: int = DEFAULT_SCALE_PERCENT):
    bitmap.validate()
    _check_scale(scale_percent)
    frame_w, frame_h = bitmap.width // grid.cols, bitmap.height // grid.rows
    if frame_w == 0 or frame_h == 0:
        raise InvalidParameter(
            "grid", f"{bitmap.width}x{bitmap.height} sheet is too small for {grid.rows}x{grid.cols} frames"
        )

    residual_w = bitmap.width - frame_w * grid.cols
    residual_h = bitmap.height - frame_h * grid.rows
    if residual_w or residual_h:
        logger.debug("dropping %d right column(s) and %d bottom row(s) of the sheet", residual_w, residual_h)

    out_size = scaled_size(frame_w, frame_h, scale_percent)
    sheet = bitmap.to_image()
    frames = []
    for index in range(grid.total_frames):
        box = frame_box(bitmap.size, grid, index)
        # NEAREST keeps hard pixel edges
        frame = sheet.crop(box).resize(out_size, Image.Resampling.NEAREST)
        frames.append(Bitmap.from_image(frame))
    logger.debug("sliced %d frames of %dx%d at %d%%", len(frames), out_size[0], out_size[1], scale_percent)
    return frames


## captions
def stroke_width_for(scale_percent: int) -> int:
    base_offset = max(1, scale_percent // 40)
    return base_offset * 4


def stroke_offsets(stroke_width: int):
    return [
        (dx, dy)
        for dx in range(-stroke_width, stroke_width + 1)
        for dy in range(-stroke_width, stroke_width + 1)
        if dx != 0 or dy != 0
    ]


def load_font(size: int, font_path=None):
    if font_path is None:
        return ImageFont.load_default(size=size)
    try:
        return ImageFont.truetype(str(font_path), size)
    except OSError as e:
        raise InvalidParameter("font_path", f"cannot load font {font_path}: {e}") from e


def caption_anchor(width: int, height: int):
    return width / 2, height - height / 16


def caption_box(size, caption: str, stroke_enabled: bool = True,
                scale_percent: int = DEFAULT_SCALE_PERCENT, font_path=None):
    """
    Bounding box (left, top, right, bottom), right/bottom exclusive, of every
    pixel composite_caption() may touch on a frame of 'size', clipped to the
    frame. None when the caption is empty.
    """
    if not caption:
        return None
    width, height = size
    font = load_font(max(1, height // 8), font_path)
    draw = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    left, top, right, bottom = draw.textbbox(caption_anchor(width, height), caption, font=font, anchor="md")
    pad = stroke_width_for(scale_percent) if stroke_enabled else 0
    # one pixel of slack for sub-pixel anchor placement
    left, top = int(left) - pad - 1, int(top) - pad - 1
    right, bottom = int(right) + pad + 2, int(bottom) + pad + 2
    return max(0, left), max(0, top), min(width, right), min(height, bottom)


def composite_caption(frame: Bitmap, caption: str, stroke_enabled: bool = True,
                      scale_percent: int = DEFAULT_SCALE_PERCENT, font_path=None) -> Bitmap:
    """
    Draws 'caption' centred near the bottom of the frame in black. With
    'stroke_enabled' the caption is first stamped in white at every offset
    within the stroke width, leaving a halo around the glyphs.
    """
    frame.validate()
    if not caption:
        return Bitmap(frame.width, frame.height, bytes(frame.pixels))
    _check_scale(scale_percent)

    img = frame.to_image()
    draw = ImageDraw.Draw(img)
    font = load_font(max(1, frame.height // 8), font_path)
    x, y = caption_anchor(frame.width, frame.height)

    if stroke_enabled:
        for dx, dy in stroke_offsets(stroke_width_for(scale_percent)):
            draw.text((x + dx, y + dy), caption, font=font, fill=OUTLINE_COLOR, anchor="md")

    draw.text((x, y), caption, font=font, fill=FILL_COLOR, anchor="md")
    return Bitmap.from_image(img)


## export
@dataclass(frozen=True)
class ExportedFile:
    index: int
    filename: str
    data: bytes = field(repr=False)
    mime: str = "image/png"


@dataclass
class ExportResult:
    files: list = field(default_factory=list)
    failures: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def partial(self) -> bool:
        return bool(self.files) and bool(self.failures)


def encode_png(bitmap: Bitmap) -> bytes:
    buf = io.BytesIO()
    bitmap.to_image().save(buf, format="PNG")
    return buf.getvalue()


def export_frames(frames, timestamp_ms=None, prefix: str = "avatar") -> ExportResult:
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    result = ExportResult()
    for frame in frames:
        try:
            data = encode_png(frame.bitmap)
        except (PipelineError, OSError, ValueError) as e:
            failure = EncodingFailure(frame.index, str(e))
            logger.warning("could not encode %s", failure)
            result.failures.append(failure)
            continue
        filename = f"{prefix}-{frame.index + 1}-{timestamp_ms}.png"
        result.files.append(ExportedFile(frame.index, filename, data))
    return result


## pipeline
def render_frames(processed: Bitmap, params: FrameParams = FrameParams(),
                  grid: GridSpec = GRID, font_path=None):
    """Slice + caption stages on an already background-processed sheet."""
    params.validate()
    frames = slice_frames(processed, grid, params.scale_percent)
    return [
        RenderedFrame(
            index,
            composite_caption(frame, params.caption_text, params.stroke_enabled,
                              params.scale_percent, font_path),
        )
        for index, frame in enumerate(frames)
    ]


def run_pipeline(bitmap: Bitmap, params: FrameParams = FrameParams(),
                 background_mode=BackgroundMode.NONE, grid: GridSpec = GRID, font_path=None):
    bitmap.validate()
    params.validate()
    processed = extract_background(bitmap, background_mode)
    return render_frames(processed, params, grid, font_path)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Split a 2x2 avatar sprite sheet into captioned PNG frames")
    parser.add_argument("input", help="Path to the sprite sheet")
    parser.add_argument("out_dir", help="Directory to write the frames to")
    parser.add_argument("-s", "--scale", type=int, default=DEFAULT_SCALE_PERCENT,
                        help="Output scale in percent of the frame size (default: 100)")
    parser.add_argument("-b", "--background", choices=[m.value for m in BackgroundMode], default="none",
                        help="Background colour to make transparent")
    parser.add_argument("-t", "--text", default="", help="Caption drawn on every frame")
    parser.add_argument("--no-stroke", action="store_true", help="Draw the caption without the white outline")
    parser.add_argument("--font", default=None, help="TrueType font for the caption")
    parser.add_argument("--prefix", default="avatar", help="Output filename prefix")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(levelname)s %(name)s: %(message)s")

    # frame_store imports this module
    from frame_store import DirectoryStore, save_exports

    params = FrameParams(args.scale, args.text, not args.no_stroke)
    try:
        sheet = load_bitmap(args.input)
        processed = extract_background(sheet, args.background)
        frames = render_frames(processed, params, font_path=args.font)
        store = DirectoryStore(args.out_dir)
    except PipelineError as e:
        logger.error("%s", e)
        return 1

    if DIAGNOSTICS:
        # RGBA needs a format with alpha, whatever the input extension
        stem = Path(args.input).stem
        processed.to_image().save(store.root / f"processed_{stem}.png")
        mask = background_mask(sheet, args.background)
        Image.fromarray(np.where(mask, 0, 255).astype(np.uint8), mode="L").save(
            store.root / f"bg_mask_{stem}.png")

    result = export_frames(frames, prefix=args.prefix)
    store_failures = save_exports(result, store)
    for exported in result.files:
        logger.info("wrote %s", store.root / exported.filename)
    if result.failures or store_failures:
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())


# for a sheet on a white background, 50% size, with a caption:
    # python avatar.py sheet.png out/ -b light -s 50 -t "Hi"
