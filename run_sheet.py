from __future__ import annotations

import argparse
import logging
import math
from pathlib import Path
from typing import Sequence, Tuple

from PIL import Image

import mugpack


logger = logging.getLogger(__name__)


def parse_hex(s: str, fallback: Tuple[int, int, int]) -> Tuple[int, int, int]:
    t = s.strip().lstrip("#")
    if len(t) != 6:
        return fallback
    try:
        r = int(t[0:2], 16)
        g = int(t[2:4], 16)
        b = int(t[4:6], 16)
        return (r, g, b)
    except ValueError:
        return fallback


def render_sheet(
    items: Sequence[mugpack.MugshotItem],
    size: Tuple[int, int],
    margin: int,
    background: Tuple[int, int, int] = (32, 32, 32),
    codec: mugpack.PillowCodec | None = None,
) -> Image.Image:
    """Draw packed items onto a sheet using the wrap rules of the packer.

    Items must already carry their display size from ``ImagePacker.pack``.
    Items without a display size are skipped; cells below the sheet are clipped.
    """
    codec = codec or mugpack.PillowCodec(resample=Image.Resampling.BILINEAR)
    sheet_w, sheet_h = size
    out = Image.new("RGB", (sheet_w, sheet_h), color=background)

    shown = [it for it in items if it.image_width > 0 and it.image_height > 0]
    dims = [(it.image_width, it.image_height) for it in shown]
    for cell in mugpack.wrap_layout(dims, 1.0, sheet_w, margin):
        if cell.y >= sheet_h:
            break
        item = shown[cell.index]
        w = max(1, int(math.floor(cell.w)))
        h = max(1, int(math.floor(cell.h)))
        try:
            img = codec.load(item.payload if item.payload is not None else item.path)
            if img is None:
                continue
            tile = codec.crop_resize(img, w, h)
        except Exception as e:
            logger.warning("skipping %s: %s", item.path, e)
            continue
        if tile.mode == "RGBA":
            out.paste(tile, (int(cell.x), int(cell.y)), mask=tile)
        else:
            out.paste(tile, (int(cell.x), int(cell.y)))
    return out


def main(argv: Sequence[str] | None = None) -> int:
    ap = argparse.ArgumentParser("Headless contact sheet of packed mugshots")
    mugpack.add_pack_arguments(ap)
    ap.add_argument("--output", type=str, default="mugshots.jpg")
    ap.add_argument("--size", type=str, default="1280x720")
    ap.add_argument("--background", type=str, default="#202020")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    mugpack.allow_large_images()

    try:
        settings = mugpack.settings_from_args(args, args.size)
        items, scale = mugpack.pack_folder(
            Path(args.input), settings, recursive=args.recursive, workers=args.workers
        )
    except (FileNotFoundError, ValueError) as e:
        raise SystemExit(str(e))

    if scale <= 0:
        raise SystemExit(f"Mugshots do not fit into {args.size} with margin {args.margin}")

    background = parse_hex(args.background, (32, 32, 32))
    out = render_sheet(
        items,
        (int(settings.width), int(settings.height)),
        settings.margin,
        background=background,
        codec=mugpack.PillowCodec(),
    )

    out_path = Path(args.output)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    ext = out_path.suffix.lower()
    if ext in {".jpg", ".jpeg"}:
        out.save(out_path, quality=92, subsampling=1, optimize=True)
    else:
        out.save(out_path)
    print(f"Saved: {out_path} (scale={scale:.4f})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
