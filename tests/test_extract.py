import io
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
sys.path.insert(0, str(Path(__file__).resolve().parent))

import pck
from pck_fixtures import (
    build_compressed_texture,
    build_ogg_stream,
    build_pack,
    build_sample,
    build_stream_texture,
    embed_pack,
    make_image,
    pack_index_end,
)


FILES = (
    ("res://project.binary", b"ECFG" + bytes(range(32))),
    ("res://scenes/level 1/main.tscn", b"[gd_scene load_steps=2 format=2]\n"),
    ("/icon.png", b"\x89PNG\r\n\x1a\n-not-really"),
)


def _tree(root: Path) -> dict:
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


class ExtractPackTests(unittest.TestCase):
    def _extract(self, data: bytes, output_dir: Path, **flags):
        stream = io.BytesIO(data)
        index = pck.read_pack_index(stream)
        return pck.extract_pack(stream, index, output_dir, **flags)

    def test_unconverted_entries_round_trip(self) -> None:
        data = build_pack(FILES)
        with tempfile.TemporaryDirectory() as tmpdir:
            output_dir = Path(tmpdir) / "out"
            with self.assertLogs("pck", level="INFO"):
                written = self._extract(data, output_dir)

            self.assertEqual(len(written), len(FILES))
            self.assertEqual(
                _tree(output_dir),
                {
                    "project.binary": FILES[0][1],
                    "scenes/level 1/main.tscn": FILES[1][1],
                    "icon.png": FILES[2][1],
                },
            )

    def test_extraction_is_idempotent(self) -> None:
        data = build_pack(
            FILES
            + (
                ("res://tex.stex", build_stream_texture(pck.STREAM_TEXTURE_FORMAT_PNG, make_image("PNG"))),
                ("res://jump.sample", build_sample(b"\x01\x02" * 50, mix_rate=22050)),
            )
        )
        with tempfile.TemporaryDirectory() as tmpdir:
            output_dir = Path(tmpdir)
            with self.assertLogs("pck", level="INFO"):
                self._extract(data, output_dir, convert=True)
            first = _tree(output_dir)
            with self.assertLogs("pck", level="INFO"):
                self._extract(data, output_dir, convert=True)
            second = _tree(output_dir)

        self.assertEqual(first, second)
        self.assertIn("tex.png", first)
        self.assertIn("jump.wav", first)

    def test_entries_before_index_end_are_skipped(self) -> None:
        data = build_pack(FILES, extra_entries=(("res://overlap.bin", 8, 16),))
        with tempfile.TemporaryDirectory() as tmpdir:
            output_dir = Path(tmpdir)
            with self.assertLogs("pck", level="WARNING") as logs:
                written = self._extract(data, output_dir)

            self.assertFalse((output_dir / "overlap.bin").exists())
            self.assertEqual(len(written), len(FILES))

        output = "\n".join(logs.output)
        self.assertIn("Skipping invalid entry 'res://overlap.bin'", output)
        self.assertIn(f"< index end {pack_index_end(data)}", output)

    def test_verify_reports_mismatch_and_still_writes(self) -> None:
        bad_path = FILES[1][0]
        data = build_pack(FILES, digests={bad_path: b"\x11" * 16})
        with tempfile.TemporaryDirectory() as tmpdir:
            output_dir = Path(tmpdir)
            with self.assertLogs("pck", level="WARNING") as logs:
                written = self._extract(data, output_dir, verify=True)

            self.assertEqual(len(written), len(FILES))
            self.assertEqual((output_dir / "scenes" / "level 1" / "main.tscn").read_bytes(), FILES[1][1])

        self.assertEqual(len(logs.output), 1)
        self.assertIn(f"Hash mismatch for '{bad_path}'", logs.output[0])
        self.assertIn("11" * 16, logs.output[0])

    def test_verify_accepts_matching_digests(self) -> None:
        data = build_pack(FILES)
        stream = io.BytesIO(data)
        with self.assertLogs("pck", level="INFO"):
            index = pck.read_pack_index(stream)
        for entry in index.entries:
            payload = data[entry.offset : entry.offset + entry.size]
            self.assertTrue(pck.verify_entry(entry, payload))

    def test_convert_and_verify_are_exclusive(self) -> None:
        data = build_pack(FILES)
        with tempfile.TemporaryDirectory() as tmpdir:
            output_dir = Path(tmpdir) / "out"
            with self.assertLogs("pck", level="INFO"):
                with self.assertRaises(ValueError):
                    self._extract(data, output_dir, convert=True, verify=True)
            self.assertFalse(output_dir.exists())

    def test_convert_rewrites_ranges_and_names(self) -> None:
        png = make_image("PNG")
        ogg = b"OggS" + b"\x07" * 40
        audio = b"\x10\x20" * 64
        files = (
            ("res://.import/icon.png-0a1b.stex", build_stream_texture(pck.STREAM_TEXTURE_FORMAT_PNG, png)),
            ("res://music/theme.oggstr", build_ogg_stream(ogg)),
            ("res://sfx/jump.sample", build_sample(audio, mix_rate=22050)),
            ("res://readme.txt", b"hello"),
        )
        with tempfile.TemporaryDirectory() as tmpdir:
            output_dir = Path(tmpdir)
            with self.assertLogs("pck", level="INFO"):
                self._extract(build_pack(files), output_dir, convert=True)
            tree = _tree(output_dir)

        self.assertEqual(
            set(tree),
            {".import/icon.png-0a1b.png", "music/theme.ogg", "sfx/jump.wav", "readme.txt"},
        )
        self.assertEqual(tree[".import/icon.png-0a1b.png"], png)
        self.assertEqual(tree["music/theme.ogg"], ogg)
        self.assertEqual(tree["sfx/jump.wav"][44:], audio)
        self.assertEqual(tree["readme.txt"], b"hello")

    def test_without_convert_resources_are_copied_raw(self) -> None:
        stex = build_stream_texture(pck.STREAM_TEXTURE_FORMAT_PNG, make_image("PNG"))
        data = build_pack((("res://a.stex", stex),))
        with tempfile.TemporaryDirectory() as tmpdir:
            output_dir = Path(tmpdir)
            with self.assertLogs("pck", level="INFO"):
                self._extract(data, output_dir)
            self.assertEqual(_tree(output_dir), {"a.stex": stex})

    def test_basis_universal_textures_are_not_written_when_converting(self) -> None:
        ctex = build_compressed_texture(pck.TextureFormat.BASIS_UNIVERSAL, [b"\xABKTX 20\xBB"])
        data = build_pack((("res://textures/sky.ctex", ctex),))
        with tempfile.TemporaryDirectory() as tmpdir:
            output_dir = Path(tmpdir)
            with self.assertLogs("pck", level="WARNING"):
                written = self._extract(data, output_dir, convert=True)
            self.assertEqual(written, [])
            self.assertEqual(_tree(output_dir), {})

    def test_unsafe_paths_are_rejected(self) -> None:
        data = build_pack((("res://../escape.txt", b"x"),))
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertLogs("pck", level="INFO"):
                with self.assertRaises(pck.PCKFormatError):
                    self._extract(data, Path(tmpdir) / "out")


class UnpackTests(unittest.TestCase):
    def test_unpack_defaults_to_sibling_directory(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            archive = tmp / "game.pck"
            archive.write_bytes(build_pack(FILES))
            with self.assertLogs("pck", level="INFO"):
                written = pck.unpack(archive)

            self.assertEqual(len(written), len(FILES))
            self.assertEqual((tmp / "game" / "project.binary").read_bytes(), FILES[0][1])

    def test_unpack_embedded_package(self) -> None:
        executable = b"\x7fELF" + b"\x00" * 252
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            game = tmp / "game.x86_64"
            game.write_bytes(embed_pack(executable, build_pack(FILES, origin=len(executable))))
            with self.assertLogs("pck", level="INFO"):
                pck.unpack(game, tmp / "out")

            self.assertEqual((tmp / "out" / "icon.png").read_bytes(), FILES[2][1])

    def test_unsupported_version_writes_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            archive = tmp / "game.pck"
            archive.write_bytes(build_pack(FILES, version=9))
            with self.assertLogs("pck", level="INFO"):
                with self.assertRaises(pck.PCKFormatError):
                    pck.unpack(archive, tmp / "out")
            self.assertFalse((tmp / "out").exists())


class CommandLineTests(unittest.TestCase):
    def test_main_extracts_archive(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            archive = tmp / "game.pck"
            archive.write_bytes(build_pack(FILES))
            with mock.patch("logging.basicConfig"), self.assertLogs("pck", level="INFO") as logs:
                status = pck.main([str(archive), str(tmp / "extracted"), "--verify"])

            self.assertEqual(status, 0)
            self.assertTrue((tmp / "extracted" / "scenes" / "level 1" / "main.tscn").exists())
        self.assertIn("Extraction complete. 3 file(s)", "\n".join(logs.output))

    def test_main_rejects_convert_with_verify(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            archive = tmp / "game.pck"
            archive.write_bytes(build_pack(FILES))
            stdout = io.StringIO()
            with mock.patch("sys.stdout", stdout):
                status = pck.main([str(archive), "-c", "-v"])

            self.assertEqual(status, 0)
            self.assertFalse((tmp / "game").exists())
        self.assertIn("Cannot use --convert and --verify together", stdout.getvalue())

    def test_main_without_input_prints_usage(self) -> None:
        stdout = io.StringIO()
        with mock.patch("sys.stdout", stdout):
            status = pck.main([])
        self.assertEqual(status, 0)
        self.assertIn("usage:", stdout.getvalue())

    def test_main_reports_missing_input(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            missing = Path(tmpdir) / "missing.pck"
            with mock.patch("logging.basicConfig"), self.assertLogs("pck", level="ERROR") as logs:
                status = pck.main([str(missing)])

        self.assertEqual(status, 0)
        self.assertIn("does not exist", "\n".join(logs.output))

    def test_main_reports_fatal_errors(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            archive = tmp / "broken.pck"
            archive.write_bytes(b"not a package at all")
            with mock.patch("logging.basicConfig"), self.assertLogs("pck", level="ERROR") as logs:
                status = pck.main([str(archive)])

            self.assertEqual(status, 1)
            self.assertFalse((tmp / "broken").exists())
        self.assertIn("not a valid Godot package", "\n".join(logs.output))


if __name__ == "__main__":
    unittest.main()
