from __future__ import annotations

import argparse
from concurrent.futures import Executor, Future, ThreadPoolExecutor
import io
import logging
import math
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Sequence, Tuple

from PIL import Image, ImageOps


logger = logging.getLogger(__name__)

SUPPORTED_EXTS = {".jpg", ".jpeg", ".png", ".webp", ".bmp", ".tif", ".tiff", ".dds"}

DEFAULT_MAX_ITEMS_TO_FIT = 50
SCALE_CEILING = 10.0
SCALE_FLOOR = 0.001
SCALE_EPSILON = 0.001
MAX_ITERATIONS = 100
BASE_DPI = 96.0

# EXIF orientations that rotate the picture by 90 degrees
_SWAPPED_ORIENTATIONS = {5, 6, 7, 8}
_EXIF_ORIENTATION = 0x0112

Dims = Tuple[float, float]


def allow_large_images() -> None:
    # keep a very high limit to avoid PIL warning spam; only the CLIs opt in
    Image.MAX_IMAGE_PIXELS = max(int(getattr(Image, "MAX_IMAGE_PIXELS", 0) or 0), 250_000_000)


def _effective_workers(workers: int) -> int:
    if workers <= 0:
        cpu = os.cpu_count() or 4
        return min(32, max(1, cpu * 2))
    return max(1, int(workers))


class PackCancelled(Exception):
    """Raised when a pack run is abandoned through its CancelToken."""


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PackCancelled("pack cancelled")


def _check(token: CancelToken | None) -> None:
    if token is not None:
        token.raise_if_cancelled()


@dataclass
class MugshotItem:
    path: Path | None = None
    visible: bool = True
    pixel_width: int = 0
    pixel_height: int = 0
    dip_width: float = 0.0
    dip_height: float = 0.0
    dip_diagonal: float = 0.0
    image_width: float = 0.0
    image_height: float = 0.0
    payload: bytes | None = None

    @property
    def packable(self) -> bool:
        return self.visible and self.dip_width > 0 and self.dip_height > 0

    def set_dimensions(self, pixel_w: int, pixel_h: int, dip_w: float, dip_h: float) -> None:
        self.pixel_width = int(pixel_w)
        self.pixel_height = int(pixel_h)
        self.dip_width = float(dip_w)
        self.dip_height = float(dip_h)
        self.dip_diagonal = math.hypot(self.dip_width, self.dip_height)


@dataclass(frozen=True)
class PackingResult:
    width: float
    height: float
    aborted: bool = False


@dataclass(frozen=True)
class PlacedMugshot:
    index: int
    x: float
    y: float
    w: float
    h: float


@dataclass(frozen=True)
class PackSettings:
    width: float
    height: float
    margin: int = 0
    normalize: bool = True
    max_items_to_fit: int = DEFAULT_MAX_ITEMS_TO_FIT
    respect_dpi: bool = False


def parse_viewport(size: str) -> Tuple[int, int]:
    parts = size.strip().lower().replace("×", "x").split("x")
    if len(parts) != 2:
        raise ValueError("--viewport must be like 1280x720")
    w, h = int(parts[0]), int(parts[1])
    if w < 0 or h < 0:
        raise ValueError("--viewport must not be negative")
    return w, h


class PillowCodec:
    """Image capability used by the packer: probe, decode, crop-resize and encode.

    ``identify`` only reads headers. Everything else decodes pixels.
    """

    def __init__(
        self,
        resample: Image.Resampling = Image.Resampling.LANCZOS,
        respect_dpi: bool = False,
    ) -> None:
        self.resample = resample
        self.respect_dpi = respect_dpi

    def _open(self, source) -> Image.Image | None:
        if isinstance(source, (bytes, bytearray)):
            if not source:
                return None
            return Image.open(io.BytesIO(source))
        if source is None:
            return None
        path = Path(source)
        if not path.is_file() or path.stat().st_size == 0:
            return None
        return Image.open(path)

    def identify(self, source) -> Tuple[int, int, float, float]:
        try:
            img = self._open(source)
            if img is None:
                logger.warning("no image data at %s", _describe(source))
                return (0, 0, 0.0, 0.0)
            with img:
                w, h = img.size
                if img.getexif().get(_EXIF_ORIENTATION) in _SWAPPED_ORIENTATIONS:
                    w, h = h, w
                dpi = img.info.get("dpi")
        except Exception as e:
            logger.warning("failed to read dimensions of %s: %s", _describe(source), e)
            return (0, 0, 0.0, 0.0)

        dip_w, dip_h = float(w), float(h)
        if self.respect_dpi and dpi:
            h_res = float(dpi[0]) if float(dpi[0]) > 1 else BASE_DPI
            v_res = float(dpi[1]) if float(dpi[1]) > 1 else BASE_DPI
            dip_w = w * (BASE_DPI / h_res)
            dip_h = h * (BASE_DPI / v_res)
        return (w, h, dip_w, dip_h)

    def load(self, source) -> Image.Image | None:
        img = self._open(source)
        if img is None:
            return None
        with img:
            out = ImageOps.exif_transpose(img)
            if out.mode in ("LA", "PA") or (out.mode == "P" and "transparency" in out.info):
                out = out.convert("RGBA")
            elif out.mode not in ("RGB", "RGBA"):
                out = out.convert("RGB")
            out.load()
        return out

    def crop_resize(self, img: Image.Image, target_w: int, target_h: int) -> Image.Image:
        if target_w <= 0 or target_h <= 0:
            raise ValueError("resize size must be positive")
        ow, oh = img.size
        if ow <= 0 or oh <= 0:
            raise ValueError("source image is empty")

        src_aspect = ow / oh
        dst_aspect = target_w / target_h
        if src_aspect > dst_aspect:
            new_w = oh * dst_aspect
            left = (ow - new_w) / 2.0
            box = (left, 0.0, left + new_w, float(oh))
        else:
            new_h = ow / dst_aspect
            top = (oh - new_h) / 2.0
            box = (0.0, top, float(ow), top + new_h)
        return img.resize((target_w, target_h), resample=self.resample, box=box)

    def encode(self, img: Image.Image) -> bytes:
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return buf.getvalue()


def _describe(source) -> str:
    if isinstance(source, (bytes, bytearray)):
        return f"<{len(source)} bytes>"
    return str(source)


def iter_image_files(folder: Path, recursive: bool) -> List[Path]:
    if not folder.exists() or not folder.is_dir():
        raise FileNotFoundError(f"input folder not found: {folder}")

    walker: Iterable[Path] = folder.rglob("*") if recursive else folder.glob("*")
    return sorted(p for p in walker if p.is_file() and p.suffix.lower() in SUPPORTED_EXTS)


def collect_mugshots(paths: Sequence[Path], codec=None, workers: int = 0) -> List[MugshotItem]:
    codec = codec or PillowCodec()

    def probe(p: Path) -> MugshotItem:
        item = MugshotItem(path=p)
        item.set_dimensions(*codec.identify(p))
        return item

    n_workers = _effective_workers(workers)
    if n_workers <= 1 or len(paths) <= 8:
        return [probe(p) for p in paths]

    with ThreadPoolExecutor(max_workers=n_workers) as ex:
        return list(ex.map(probe, paths))


def can_pack_all(
    dims: Sequence[Dims],
    scale: float,
    container_w: float,
    container_h: float,
    margin: int,
    token: CancelToken | None = None,
) -> bool:
    x = 0.0
    y = 0.0
    row_h = 0.0
    for w, h in dims:
        _check(token)
        item_w = w * scale + 2 * margin
        item_h = h * scale + 2 * margin
        if item_w > container_w or item_h > container_h:
            return False
        if x + item_w > container_w:
            x = 0.0
            y += row_h
            row_h = 0.0
        if y + item_h > container_h:
            return False
        x += item_w
        row_h = max(row_h, item_h)
    return True


def wrap_layout(
    dims: Sequence[Dims],
    scale: float,
    container_w: float,
    margin: int,
) -> List[PlacedMugshot]:
    """Place items with the wrapping rules of ``can_pack_all``.

    Rows may run past the bottom of the container; the caller clips. The
    returned boxes exclude the margin.
    """
    placed: List[PlacedMugshot] = []
    x = 0.0
    y = 0.0
    row_h = 0.0
    for i, (w, h) in enumerate(dims):
        item_w = w * scale + 2 * margin
        item_h = h * scale + 2 * margin
        if x + item_w > container_w:
            x = 0.0
            y += row_h
            row_h = 0.0
        placed.append(PlacedMugshot(index=i, x=x + margin, y=y + margin, w=w * scale, h=h * scale))
        x += item_w
        row_h = max(row_h, item_h)
    return placed


def calculate_packer_scale(
    dims: Sequence[Dims],
    container_w: float,
    container_h: float,
    margin: int,
    token: CancelToken | None = None,
) -> float:
    low = 0.0
    high = SCALE_CEILING
    if dims:
        first_w, first_h = dims[0]
        eff_w = first_w + 2 * margin
        eff_h = first_h + 2 * margin
        if eff_w > SCALE_FLOOR:
            high = min(high, container_w / eff_w)
        else:
            high = SCALE_FLOOR
        if eff_h > SCALE_FLOOR:
            high = min(high, container_h / eff_h)
        else:
            high = min(high, SCALE_FLOOR)
        high = max(SCALE_FLOOR, high)

    iterations = 0
    while high - low > SCALE_EPSILON and iterations < MAX_ITERATIONS:
        _check(token)
        mid = low + (high - low) / 2
        if mid <= 0:
            low = 0.0
            break
        if can_pack_all(dims, mid, container_w, container_h, margin, token):
            low = mid
        else:
            high = mid
        iterations += 1

    logger.debug("packer scale %.4f after %d iterations (%d items)", low, iterations, len(dims))
    return max(0.0, low)


def mode_pixel_size(items: Sequence[MugshotItem]) -> Tuple[int, int] | None:
    counts: dict[Tuple[int, int], int] = {}
    for item in items:
        key = (item.pixel_width, item.pixel_height)
        counts[key] = counts.get(key, 0) + 1
    if not counts:
        return None
    # max() keeps the first key on ties and dicts keep insertion order
    return max(counts, key=counts.__getitem__)


def normalize_to_mode(
    items: Sequence[MugshotItem],
    mode: Tuple[int, int],
    codec,
    token: CancelToken | None = None,
) -> int:
    """Crop-resize every item whose pixel size differs from ``mode``.

    Returns how many items were converted. An item that fails keeps its
    previous payload and dimensions.
    """
    mode_w, mode_h = mode
    converted = 0
    for item in items:
        _check(token)
        if (item.pixel_width, item.pixel_height) == (mode_w, mode_h):
            continue
        try:
            source = item.payload if item.payload is not None else item.path
            img = codec.load(source)
            if img is None:
                raise FileNotFoundError(f"no image data at {_describe(source)}")
            normalized = codec.crop_resize(img, mode_w, mode_h)
            item.payload = codec.encode(normalized)
            item.set_dimensions(mode_w, mode_h, float(mode_w), float(mode_h))
            converted += 1
        except Exception as e:
            logger.warning("failed to normalize %s: %s", item.path, e)
    return converted


class ImagePacker:
    def __init__(self, codec=None) -> None:
        self.codec = codec or PillowCodec()
        self.last_result: PackingResult | None = None
        self._listeners: List[Callable[[PackingResult], None]] = []

    def add_listener(self, callback: Callable[[PackingResult], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[PackingResult], None]) -> None:
        self._listeners.remove(callback)

    def _publish(self, result: PackingResult) -> None:
        self.last_result = result
        for callback in list(self._listeners):
            try:
                callback(result)
            except Exception:
                logger.exception("packing listener %r failed", callback)

    def pack(
        self,
        items: Sequence[MugshotItem],
        available_height: float,
        available_width: float,
        margin: int,
        normalize: bool = True,
        max_items_to_fit: int = DEFAULT_MAX_ITEMS_TO_FIT,
        token: CancelToken | None = None,
    ) -> float:
        """Size every item so the visible ones share one scale and fit the container.

        Writes ``image_width``/``image_height`` on each item and, when
        normalizing, may replace pixel sizes and payloads. Listeners hear
        about the outcome exactly once, including when the run is cancelled.
        """
        result = PackingResult(0.0, 0.0, aborted=True)
        try:
            if margin < 0:
                raise ValueError("margin must not be negative")
            if max_items_to_fit < 1:
                raise ValueError("max_items_to_fit must be positive")
            scale, result = self._fit(
                items, available_height, available_width, margin, normalize, max_items_to_fit, token
            )
            return scale
        finally:
            self._publish(result)

    def submit(self, executor: Executor, items: Sequence[MugshotItem], *args, **kwargs) -> "Future[float]":
        return executor.submit(self.pack, items, *args, **kwargs)

    def _fit(
        self,
        items: Sequence[MugshotItem],
        available_height: float,
        available_width: float,
        margin: int,
        normalize: bool,
        max_items_to_fit: int,
        token: CancelToken | None,
    ) -> Tuple[float, PackingResult]:
        visible = [item for item in items if item.packable]
        if not visible:
            for item in items:
                item.image_width = 0.0
                item.image_height = 0.0
            return 1.0, PackingResult(0.0, 0.0)

        mode = mode_pixel_size(visible) if normalize else None
        if mode is not None and mode[0] != 0:
            mode_w, mode_h = float(mode[0]), float(mode[1])
            uniform = [(mode_w, mode_h)] * min(len(visible), max_items_to_fit)
            scale = calculate_packer_scale(uniform, available_width, available_height, margin, token)
            converted = normalize_to_mode(visible, mode, self.codec, token)
            logger.debug("normalized %d/%d items to %dx%d", converted, len(visible), mode[0], mode[1])
            bases = {id(item): (mode_w, mode_h) for item in visible}
        else:
            if normalize:
                logger.debug("no usable mode size; packing with original dimensions")
            dims = [(item.dip_width, item.dip_height) for item in visible[:max_items_to_fit]]
            scale = calculate_packer_scale(dims, available_width, available_height, margin, token)
            bases = {id(item): (item.dip_width, item.dip_height) for item in visible}

        for item in items:
            _check(token)
            base = bases.get(id(item))
            if base is None:
                item.image_width = 0.0
                item.image_height = 0.0
            else:
                item.image_width = base[0] * scale
                item.image_height = base[1] * scale

        first = visible[0]
        return scale, PackingResult(first.image_width, first.image_height)


def pack_folder(
    folder: Path,
    settings: PackSettings,
    recursive: bool = False,
    workers: int = 0,
    token: CancelToken | None = None,
) -> Tuple[List[MugshotItem], float]:
    files = iter_image_files(folder, recursive=recursive)
    if not files:
        raise FileNotFoundError(f"No images found in: {folder}")

    codec = PillowCodec(respect_dpi=settings.respect_dpi)
    items = collect_mugshots(files, codec=codec, workers=workers)
    packer = ImagePacker(codec)
    scale = packer.pack(
        items,
        settings.height,
        settings.width,
        settings.margin,
        normalize=settings.normalize,
        max_items_to_fit=settings.max_items_to_fit,
        token=token,
    )
    return items, scale


def add_pack_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--input", type=str, required=True, help="Folder containing mugshot images")
    parser.add_argument("--recursive", action="store_true", help="Scan input folder recursively")
    parser.add_argument("--margin", type=int, default=2, help="Uniform margin around each item")
    parser.add_argument(
        "--no-normalize",
        dest="normalize",
        action="store_false",
        help="Keep original sizes instead of crop-resizing outliers to the most common size",
    )
    parser.add_argument(
        "--max-fit",
        type=int,
        default=DEFAULT_MAX_ITEMS_TO_FIT,
        help="How many items are used to compute the shared scale",
    )
    parser.add_argument("--dpi", action="store_true", help="Convert pixels to display units using the image DPI")
    parser.add_argument("--workers", type=int, default=0, help="Thread workers for probing. 0 means auto.")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")


def settings_from_args(args: argparse.Namespace, size: str) -> PackSettings:
    w, h = parse_viewport(size)
    if args.margin < 0:
        raise ValueError("--margin must not be negative")
    if args.max_fit < 1:
        raise ValueError("--max-fit must be positive")
    return PackSettings(
        width=w,
        height=h,
        margin=args.margin,
        normalize=args.normalize,
        max_items_to_fit=args.max_fit,
        respect_dpi=args.dpi,
    )


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Compute the uniform scale that fits a folder of mugshots into a viewport."
    )
    add_pack_arguments(parser)
    parser.add_argument("--viewport", type=str, default="1280x720", help="Available area like 1280x720")
    parser.add_argument("--list", action="store_true", help="Print the display size of every item")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    allow_large_images()

    try:
        settings = settings_from_args(args, args.viewport)
    except ValueError as e:
        raise SystemExit(str(e))

    try:
        items, scale = pack_folder(Path(args.input), settings, recursive=args.recursive, workers=args.workers)
    except FileNotFoundError as e:
        raise SystemExit(str(e))

    shown = [it for it in items if it.image_width > 0 and it.image_height > 0]
    print(f"scale={scale:.4f}; items={len(shown)}/{len(items)}")
    if shown:
        print(f"item size: {shown[0].image_width:.1f}x{shown[0].image_height:.1f}")
    if args.list:
        for it in items:
            print(f"{it.path}: {it.pixel_width}x{it.pixel_height} -> {it.image_width:.1f}x{it.image_height:.1f}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
