"""PillowCodec probing and crop-resize on real image files."""
import logging

import pytest
from PIL import Image

from mugpack import ImagePacker, PillowCodec, collect_mugshots, iter_image_files


def _save(path, size, color=(0, 128, 0), **kwargs):
    Image.new("RGB", size, color=color).save(path, **kwargs)
    return path


class TestIdentify:

    def test_png_dimensions(self, tmp_path):
        p = _save(tmp_path / "a.png", (40, 30))
        assert PillowCodec().identify(p) == (40, 30, 40.0, 30.0)

    def test_accepts_str_path(self, tmp_path):
        p = _save(tmp_path / "a.png", (12, 7))
        assert PillowCodec().identify(str(p))[:2] == (12, 7)

    def test_missing_file(self, tmp_path, caplog):
        with caplog.at_level(logging.WARNING, logger="mugpack"):
            assert PillowCodec().identify(tmp_path / "nope.png") == (0, 0, 0.0, 0.0)
        assert "nope.png" in caplog.text

    def test_empty_file(self, tmp_path):
        p = tmp_path / "empty.png"
        p.write_bytes(b"")
        assert PillowCodec().identify(p) == (0, 0, 0.0, 0.0)

    def test_garbage_file(self, tmp_path, caplog):
        p = tmp_path / "junk.jpg"
        p.write_bytes(b"definitely not an image")
        with caplog.at_level(logging.WARNING, logger="mugpack"):
            assert PillowCodec().identify(p) == (0, 0, 0.0, 0.0)
        assert "junk.jpg" in caplog.text

    def test_none_source(self):
        assert PillowCodec().identify(None) == (0, 0, 0.0, 0.0)

    def test_encoded_bytes(self):
        codec = PillowCodec()
        data = codec.encode(Image.new("RGB", (9, 5)))
        assert codec.identify(data) == (9, 5, 9.0, 5.0)

    def test_dpi_is_ignored_by_default(self, tmp_path):
        p = _save(tmp_path / "hi.jpg", (40, 30), dpi=(192, 192))
        assert PillowCodec().identify(p) == (40, 30, 40.0, 30.0)

    def test_dpi_scaling_when_requested(self, tmp_path):
        p = _save(tmp_path / "hi.jpg", (40, 30), dpi=(192, 192))
        pw, ph, dw, dh = PillowCodec(respect_dpi=True).identify(p)
        assert (pw, ph) == (40, 30)
        assert dw == pytest.approx(20.0)
        assert dh == pytest.approx(15.0)

    def test_exif_rotation_swaps_sides(self, tmp_path):
        exif = Image.Exif()
        exif[0x0112] = 6
        p = _save(tmp_path / "rot.jpg", (40, 30), exif=exif)
        codec = PillowCodec()
        assert codec.identify(p)[:2] == (30, 40)
        assert codec.load(p).size == (30, 40)


class TestTransform:

    def test_load_missing_returns_none(self, tmp_path):
        assert PillowCodec().load(tmp_path / "gone.png") is None

    def test_load_converts_palette_images(self, tmp_path):
        p = tmp_path / "p.png"
        Image.new("P", (8, 8)).save(p)
        assert PillowCodec().load(p).mode == "RGB"

    def test_load_keeps_alpha_of_gray_images(self, tmp_path):
        p = tmp_path / "la.png"
        Image.new("LA", (8, 8), color=(90, 0)).save(p)
        img = PillowCodec().load(p)
        assert img.mode == "RGBA"
        assert img.getpixel((3, 3))[3] == 0

    def test_load_keeps_palette_transparency(self, tmp_path):
        p = tmp_path / "tp.png"
        Image.new("P", (8, 8), color=0).save(p, transparency=0)
        img = PillowCodec().load(p)
        assert img.mode == "RGBA"
        assert img.getpixel((0, 0))[3] == 0

    def test_normalized_payload_stays_transparent(self, tmp_path):
        p = tmp_path / "la.png"
        Image.new("LA", (40, 20), color=(90, 0)).save(p)
        codec = PillowCodec()
        data = codec.encode(codec.crop_resize(codec.load(p), 10, 10))
        out = codec.load(data)
        assert out.mode == "RGBA"
        assert out.getpixel((5, 5))[3] == 0

    def test_crop_resize_hits_exact_size(self):
        img = Image.new("RGB", (400, 300))
        assert PillowCodec().crop_resize(img, 200, 200).size == (200, 200)

    def test_crop_resize_removes_side_bands(self):
        img = Image.new("RGB", (400, 300), color=(0, 200, 0))
        img.paste((255, 0, 0), (0, 0, 40, 300))
        img.paste((0, 0, 255), (360, 0, 400, 300))
        out = PillowCodec().crop_resize(img, 200, 200)
        for x in (0, 100, 199):
            r, g, b = out.getpixel((x, 100))
            assert g > 150 and r < 60 and b < 60

    def test_crop_resize_removes_top_and_bottom_bands(self):
        img = Image.new("RGB", (100, 300), color=(0, 200, 0))
        img.paste((255, 0, 0), (0, 0, 100, 40))
        img.paste((255, 0, 0), (0, 260, 100, 300))
        out = PillowCodec().crop_resize(img, 50, 100)
        for y in (0, 50, 99):
            r, g, _ = out.getpixel((25, y))
            assert g > 150 and r < 60

    def test_crop_resize_rejects_empty_target(self):
        with pytest.raises(ValueError):
            PillowCodec().crop_resize(Image.new("RGB", (10, 10)), 0, 10)

    def test_encode_load_keeps_size(self):
        codec = PillowCodec()
        data = codec.encode(Image.new("RGBA", (17, 11)))
        assert data[:8] == b"\x89PNG\r\n\x1a\n"
        assert codec.load(data).size == (17, 11)


class TestDiscovery:

    def test_iter_image_files_filters_and_sorts(self, tmp_path):
        _save(tmp_path / "b.png", (4, 4))
        _save(tmp_path / "a.jpg", (4, 4))
        (tmp_path / "notes.txt").write_text("x")
        sub = tmp_path / "sub"
        sub.mkdir()
        _save(sub / "c.png", (4, 4))
        assert [p.name for p in iter_image_files(tmp_path, recursive=False)] == ["a.jpg", "b.png"]
        assert len(iter_image_files(tmp_path, recursive=True)) == 3

    def test_iter_image_files_missing_folder(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            iter_image_files(tmp_path / "missing", recursive=False)

    @pytest.mark.parametrize("workers", [1, 4])
    def test_collect_keeps_order_and_broken_files(self, tmp_path, workers):
        paths = []
        for i in range(12):
            p = tmp_path / f"{i:02d}.png"
            if i == 5:
                p.write_bytes(b"broken")
            else:
                _save(p, (10 + i, 20))
            paths.append(p)
        items = collect_mugshots(paths, PillowCodec(), workers=workers)
        assert [it.path for it in items] == paths
        assert items[5].pixel_width == 0 and not items[5].packable
        assert items[3].pixel_width == 13 and items[3].dip_height == 20.0


class TestPackWithPillow:

    def test_outlier_payload_is_rewritten(self, tmp_path):
        paths = [
            _save(tmp_path / "a.png", (60, 40)),
            _save(tmp_path / "b.png", (60, 40)),
            _save(tmp_path / "c.png", (40, 40)),
        ]
        codec = PillowCodec()
        items = collect_mugshots(paths, codec, workers=1)
        scale = ImagePacker(codec).pack(items, 300, 300, 1)

        assert scale > 0
        assert items[0].payload is None
        assert items[2].payload is not None
        assert codec.identify(items[2].payload)[:2] == (60, 40)
        assert (items[2].pixel_width, items[2].pixel_height) == (60, 40)
        assert all(it.image_width == pytest.approx(60 * scale) for it in items)
