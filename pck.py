#!/usr/bin/env python3
"""Utility helpers for unpacking Godot Engine ``.pck`` archives.

A Godot package is a flat container: a small header, a directory of entries
(path, offset, size, MD5 digest) and the packed file data.  Exported games
either ship the package next to the executable or append it to the executable
itself, in which case the package ends with its own size and a trailing magic.

```
python pck.py game.pck [output_dir] [--convert | --verify]
```

Without flags every entry is written verbatim below ``output_dir``.  With
``--convert`` a few engine specific resource formats are turned into files
that regular tools understand:

* ``.stex`` stream textures (Godot 3) are stripped to the embedded PNG/WebP.
* ``.ctex`` compressed textures (Godot 4) have their PNG/WebP mipmaps written
  next to the original container.
* ``.oggstr`` streams are stripped to the embedded Ogg file.
* ``.sample`` audio resources are decoded and rebuilt as RIFF/WAVE files.

``--verify`` recomputes the MD5 digest stored in the directory for every entry
and reports mismatches.  Converted data no longer matches the packed digest, so
both flags cannot be used together.
"""

from __future__ import annotations

import argparse
import enum
import hashlib
import io
import logging
import os
import struct
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterable, List, Optional, Tuple, Union

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

PACK_MAGIC = b"GDPC"
RESOURCE_MAGIC = b"RSRC"
COMPRESSED_RESOURCE_MAGIC = b"RSCC"
WEBP_MAGIC = b"WEBP"

INT32 = struct.Struct("<i")
UINT32 = struct.Struct("<I")
INT64 = struct.Struct("<q")
FLOAT32 = struct.Struct("<f")
ENGINE_VERSION = struct.Struct("<3i")  # major, minor, patch
ENTRY_RANGE = struct.Struct("<qq")  # offset, size
PACK_FOOTER = struct.Struct("<q4s")  # package size, magic
WAV_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")

DIGEST_SIZE = 16
PACK_RESERVED_SIZE = 16 * 4
PACK_DIR_ENCRYPTED = 1
PACK_FILE_ENCRYPTED = 1

RESOURCE_RESERVED_SIZE = 8 + 14 * 4  # import metadata offset + reserved
SUPPORTED_RESOURCE_VERSION = 3
AUDIO_RESOURCE_TYPES = {"AudioStreamWAV", "AudioStreamSample"}
DEFAULT_MIX_RATE = 44100

COMPRESSED_TEXTURE_HEADER_SIZE = 36
STREAM_TEXTURE_HEADER_SIZE = 32
STREAM_TEXTURE_FORMAT_PNG = 1 << 20
STREAM_TEXTURE_FORMAT_WEBP = 1 << 21

# Layout of the bytes around an embedded Ogg stream is not documented.
OGG_STREAM_HEADER_SIZE = 279
OGG_STREAM_TRAILER_SIZE = 4


class PCKError(RuntimeError):
    """Base class for errors raised while unpacking a package."""


class PCKFormatError(PCKError):
    """Raised when the package layout does not match expectations."""


class PCKEncryptionError(PCKFormatError):
    """Raised for encrypted directories or entries."""


class ResourceFormatError(PCKError):
    """Raised when an embedded resource cannot be decoded."""


def normalize_relative_path(name: str) -> str:
    """Return a normalised relative path using forward slashes."""

    normalised = name.replace("\\", "/")
    if normalised.startswith("res://"):
        normalised = normalised[len("res://") :]
    return normalised.lstrip("/")


def replace_suffix(path: str, old: str, new: str) -> str:
    """Swap a trailing ``old`` suffix for ``new``, ignoring case."""

    if path.lower().endswith(old.lower()):
        return path[: len(path) - len(old)] + new
    return path


# ---------------------------------------------------------------- reading --


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    if size < 0:
        raise PCKFormatError(f"negative read size {size} at offset {stream.tell()}")
    position = stream.tell()
    data = stream.read(size)
    if len(data) != size:
        raise PCKFormatError(
            f"unexpected end of data at offset {position} "
            f"(wanted {size} bytes, got {len(data)})"
        )
    return data


def _read_struct(stream: BinaryIO, layout: struct.Struct) -> tuple:
    return layout.unpack(_read_exact(stream, layout.size))


def _read_int32(stream: BinaryIO) -> int:
    return _read_struct(stream, INT32)[0]


def _read_uint32(stream: BinaryIO) -> int:
    return _read_struct(stream, UINT32)[0]


def _read_int64(stream: BinaryIO) -> int:
    return _read_struct(stream, INT64)[0]


def _read_string(stream: BinaryIO) -> str:
    """Return a 32-bit length prefixed UTF-8 string without trailing NULs."""

    raw = _read_exact(stream, _read_int32(stream))
    return raw.decode("utf-8", errors="replace").rstrip("\x00")


def _skip(stream: BinaryIO, size: int) -> None:
    stream.seek(size, os.SEEK_CUR)


# ------------------------------------------------------------ data model --


@dataclass(frozen=True)
class PackEntry:
    """One file stored in the package directory.

    Entries are immutable.  Converters that strip headers or rename files
    return new entries via :meth:`shrink` and :meth:`with_extension`.
    """

    path: str
    offset: int
    size: int
    digest: bytes = field(default=b"\x00" * DIGEST_SIZE, repr=False)
    flags: int = 0

    def shrink(self, front: int, back: int = 0) -> "PackEntry":
        """Drop ``front`` bytes from the start and ``back`` bytes from the end."""

        size = self.size - front - back
        if front < 0 or back < 0 or size < 0:
            raise PCKFormatError(
                f"cannot shrink '{self.path}' ({self.size} bytes) by {front}+{back} bytes"
            )
        return replace(self, offset=self.offset + front, size=size)

    def with_extension(self, old: str, new: str) -> "PackEntry":
        return replace(self, path=replace_suffix(self.path, old, new))


@dataclass(frozen=True)
class PackHeader:
    start: int
    format_version: int
    engine_version: Tuple[int, int, int]
    flags: int = 0
    base_offset: int = 0


@dataclass(frozen=True)
class PackIndex:
    """Package directory sorted by data offset.

    ``index_end`` is the stream position right after the directory; entries
    pointing before it overlap the header and are treated as corrupt.
    """

    header: PackHeader
    entries: Tuple[PackEntry, ...]
    index_end: int

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)


# ------------------------------------------------------- package discovery --


class _Probe(enum.Enum):
    HEADER = "header"
    FOOTER = "footer"
    RELOCATED_HEADER = "relocated header"


def _magic_at(stream: BinaryIO, offset: int) -> bool:
    if offset < 0:
        return False
    stream.seek(offset)
    return stream.read(len(PACK_MAGIC)) == PACK_MAGIC


def locate_pack_start(stream: BinaryIO) -> int:
    """Return the offset of the package header inside ``stream``.

    The header is probed at the start of the stream first.  Packages appended
    to an executable end with ``<int64 package size><magic>``, which is used
    to find the header from the end of the file.
    """

    file_size = stream.seek(0, os.SEEK_END)
    probe: Optional[_Probe] = _Probe.HEADER
    candidate = 0
    while probe is not None:
        if probe is _Probe.HEADER:
            if _magic_at(stream, 0):
                return 0
            probe = _Probe.FOOTER
        elif probe is _Probe.FOOTER:
            if file_size < PACK_FOOTER.size or not _magic_at(stream, file_size - len(PACK_MAGIC)):
                break
            stream.seek(file_size - PACK_FOOTER.size)
            pack_size, _magic = _read_struct(stream, PACK_FOOTER)
            candidate = file_size - PACK_FOOTER.size - pack_size
            probe = _Probe.RELOCATED_HEADER
        else:
            if _magic_at(stream, candidate):
                logger.info(f"Found embedded package at offset {candidate}.")
                return candidate
            break

    raise PCKFormatError("not a valid Godot package or resource file")


def read_pack_header(stream: BinaryIO) -> PackHeader:
    """Locate and decode the package header, leaving the stream after it."""

    start = locate_pack_start(stream)
    stream.seek(start + len(PACK_MAGIC))

    format_version = _read_int32(stream)
    engine_version = _read_struct(stream, ENGINE_VERSION)
    logger.info(f"Package format version: {format_version}")
    logger.info("Godot version: {}.{}.{}".format(*engine_version))

    if format_version == 1:
        flags = 0
    elif format_version in (2, 3):
        flags = _read_uint32(stream)
        if flags & PACK_DIR_ENCRYPTED:
            raise PCKEncryptionError("encrypted package directories are not supported")
    else:
        raise PCKFormatError(f"package format version {format_version} is not supported")

    base_offset = _read_int64(stream) if format_version >= 2 else 0
    return PackHeader(
        start=start,
        format_version=format_version,
        engine_version=tuple(engine_version),
        flags=flags,
        base_offset=base_offset,
    )


def read_pack_index(stream: BinaryIO) -> PackIndex:
    """Parse the package directory and return its entries sorted by offset."""

    header = read_pack_header(stream)
    _skip(stream, PACK_RESERVED_SIZE)

    file_count = _read_int32(stream)
    logger.info(f"Found {file_count} files.")

    entries: List[PackEntry] = []
    for _ in range(max(0, file_count)):
        path = _read_string(stream)
        offset, size = _read_struct(stream, ENTRY_RANGE)
        digest = _read_exact(stream, DIGEST_SIZE)
        flags = 0
        if header.format_version >= 2:
            flags = _read_uint32(stream)
            if flags & PACK_FILE_ENCRYPTED:
                raise PCKEncryptionError(f"encrypted file '{path}' is not supported")
        entries.append(
            PackEntry(
                path=path,
                offset=offset + header.base_offset,
                size=size,
                digest=digest,
                flags=flags,
            )
        )

    if not entries:
        raise PCKFormatError("no files were found inside the package")

    index_end = stream.tell()
    entries.sort(key=lambda entry: entry.offset)
    return PackIndex(header=header, entries=tuple(entries), index_end=index_end)


# ---------------------------------------------------------------- variants --


class VariantTag(enum.IntEnum):
    NIL = 1
    BOOL = 2
    INT = 3
    FLOAT = 4
    ARRAY = 30
    RAW_ARRAY = 31
    INT64 = 40
    PACKED_INT64_ARRAY = 48


@dataclass(frozen=True)
class NilVariant:
    value: None = None


@dataclass(frozen=True)
class BoolVariant:
    value: bool


@dataclass(frozen=True)
class IntVariant:
    value: int


@dataclass(frozen=True)
class Int64Variant:
    value: int


@dataclass(frozen=True)
class FloatVariant:
    value: float


@dataclass(frozen=True)
class RawArrayVariant:
    value: bytes


@dataclass(frozen=True)
class ArrayVariant:
    value: Tuple["Variant", ...]


@dataclass(frozen=True)
class PackedInt64ArrayVariant:
    """Packed 64-bit integers, kept as the raw little-endian buffer."""

    value: bytes

    def __len__(self) -> int:
        return len(self.value) // INT64.size


Variant = Union[
    NilVariant,
    BoolVariant,
    IntVariant,
    Int64Variant,
    FloatVariant,
    RawArrayVariant,
    ArrayVariant,
    PackedInt64ArrayVariant,
]


def decode_variant(stream: BinaryIO) -> Variant:
    """Decode one tagged value from the binary resource format."""

    tag = _read_int32(stream)
    if tag == VariantTag.NIL:
        return NilVariant()
    if tag == VariantTag.BOOL:
        return BoolVariant(_read_int32(stream) != 0)
    if tag == VariantTag.INT:
        return IntVariant(_read_int32(stream))
    if tag == VariantTag.INT64:
        return Int64Variant(_read_int64(stream))
    if tag == VariantTag.FLOAT:
        return FloatVariant(_read_struct(stream, FLOAT32)[0])
    if tag == VariantTag.ARRAY:
        count = abs(_read_int32(stream))
        return ArrayVariant(tuple(decode_variant(stream) for _ in range(count)))
    if tag == VariantTag.RAW_ARRAY:
        size = _read_int32(stream)
        payload = _read_exact(stream, size)
        padding = 4 - (size % 4)
        if padding < 4:
            _skip(stream, padding)
        return RawArrayVariant(payload)
    if tag == VariantTag.PACKED_INT64_ARRAY:
        count = _read_int32(stream)
        return PackedInt64ArrayVariant(_read_exact(stream, count * INT64.size))
    raise ResourceFormatError(f"variant type {tag} is not supported")


_MISSING = object()


def expect_variant(
    properties: Dict[str, Variant],
    name: str,
    kinds: Union[type, Tuple[type, ...]],
    default: object = _MISSING,
):
    """Return the value of property ``name`` if it holds one of ``kinds``."""

    variant = properties.get(name)
    if variant is None:
        if default is _MISSING:
            raise ResourceFormatError(f"resource has no '{name}' property")
        return default
    if not isinstance(variant, kinds):
        raise ResourceFormatError(
            f"property '{name}' holds {type(variant).__name__}, which cannot be used here"
        )
    return variant.value


# --------------------------------------------------------------- resources --


@dataclass(frozen=True)
class ResourceObject:
    name: str
    properties: Dict[str, Variant]
    resource_type: str = ""


def parse_resource(stream: BinaryIO, start: int, label: str = "resource") -> Optional[ResourceObject]:
    """Decode the first internal object of a binary resource at ``start``.

    Returns ``None`` when the resource format version is not supported so the
    caller can fall back to copying the raw bytes.
    """

    stream.seek(start)
    magic = _read_exact(stream, 4)
    if magic == COMPRESSED_RESOURCE_MAGIC:
        raise ResourceFormatError(f"compressed resources are not supported ('{label}')")
    if magic != RESOURCE_MAGIC:
        raise ResourceFormatError(f"invalid resource magic for '{label}'")

    if _read_int32(stream):
        logger.warning(
            f"'{label}' is a big endian resource; these are not fully supported "
            "and the output might not be readable."
        )
    _skip(stream, 4)  # use_real64
    version_major = _read_int32(stream)
    version_minor = _read_int32(stream)
    resource_version = _read_int32(stream)
    resource_type = _read_string(stream)
    logger.info(
        f"Resource type: {resource_type}, engine v{version_major}.{version_minor} "
        f"(resource v{resource_version})"
    )
    if resource_version != SUPPORTED_RESOURCE_VERSION:
        logger.warning(f"Resource version {resource_version} of '{label}' is not supported.")
        return None

    _skip(stream, RESOURCE_RESERVED_SIZE)

    string_table = [_read_string(stream) for _ in range(_read_int32(stream))]

    for _ in range(_read_int32(stream)):
        _read_string(stream)  # type
        _read_string(stream)  # path

    internal_offsets: List[int] = []
    for _ in range(_read_int32(stream)):
        _read_string(stream)  # path
        internal_offsets.append(_read_int64(stream))
    if not internal_offsets:
        raise ResourceFormatError(f"no internal resources found in '{label}'")

    stream.seek(start + internal_offsets[0])
    name = _read_string(stream)
    properties: Dict[str, Variant] = {}
    for _ in range(_read_int32(stream)):
        name_index = _read_int32(stream)
        if not 0 <= name_index < len(string_table):
            raise ResourceFormatError(
                f"property name index {name_index} is outside the string table of '{label}'"
            )
        properties[string_table[name_index]] = decode_variant(stream)

    return ResourceObject(name=name, properties=properties, resource_type=resource_type)


# -------------------------------------------------------------- converters --


class SourceFormat(enum.Enum):
    UNKNOWN = "unknown"
    COMPRESSED_TEXTURE = ".ctex"  # Godot 4
    STREAM_TEXTURE = ".stex"  # Godot 3
    OGG_STREAM = ".oggstr"
    WAV_SAMPLE = ".sample"


class TextureFormat(enum.IntEnum):
    IMAGE = 0
    PNG = 1
    WEBP = 2
    BASIS_UNIVERSAL = 3


class WavFormat(enum.IntEnum):
    EIGHT_BITS = 0
    SIXTEEN_BITS = 1
    IMA_ADPCM = 2
    QOA = 3


BYTES_PER_SAMPLE = {
    WavFormat.EIGHT_BITS: 1,
    WavFormat.SIXTEEN_BITS: 2,
    WavFormat.IMA_ADPCM: 4,  # not decoded, only sized
    WavFormat.QOA: 2,
}


class Outcome(enum.Enum):
    COPY = "copy"
    WRITTEN = "written"
    DROPPED = "dropped"


@dataclass(frozen=True)
class Conversion:
    """Result of converting one entry.

    ``COPY`` asks the caller to copy ``entry`` (possibly re-ranged or renamed),
    ``WRITTEN`` means the converter already wrote the output and ``DROPPED``
    means nothing else is written for the entry.  ``outputs`` lists files the
    converter created itself.
    """

    entry: PackEntry
    outcome: Outcome
    outputs: Tuple[Path, ...] = ()


def detect_source_format(path: str) -> SourceFormat:
    name = normalize_relative_path(path).rsplit("/", 1)[-1].lower()
    suffix = name[name.rfind(".") :] if "." in name else ""
    for source_format in SourceFormat:
        if source_format.value == suffix:
            return source_format
    return SourceFormat.UNKNOWN


def resolve_output_path(output_dir: Path, entry_path: str) -> Path:
    """Map an archive path onto ``output_dir``."""

    parts = [part for part in normalize_relative_path(entry_path).split("/") if part]
    if not parts or ".." in parts:
        raise PCKFormatError(f"entry path '{entry_path}' cannot be extracted safely")
    return output_dir.joinpath(*parts)


def write_output(path: Path, payload: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)
    return path


def describe_image(payload: bytes) -> Optional[Tuple[str, Tuple[int, int]]]:
    """Return ``(format, (width, height))`` for payloads Pillow can identify."""

    try:
        with Image.open(io.BytesIO(payload)) as image:
            return image.format, image.size
    except UnidentifiedImageError:
        return None
    except OSError:  # pragma: no cover - depends on payload contents
        return None


def convert_compressed_texture(stream: BinaryIO, entry: PackEntry, output_dir: Path) -> Conversion:
    """Write the PNG/WebP mipmaps stored inside a ``.ctex`` container."""

    _skip(stream, COMPRESSED_TEXTURE_HEADER_SIZE)
    raw_format = _read_int32(stream)
    _skip(stream, 4)  # width, height (2 + 2)
    mipmaps = max(1, _read_int32(stream))
    _skip(stream, 4)

    if raw_format in (TextureFormat.PNG, TextureFormat.WEBP):
        extension = ".png" if raw_format == TextureFormat.PNG else ".webp"
        logger.info(f"Found {mipmaps} mipmaps in '{entry.path}'.")
        outputs: List[Path] = []
        for number in range(1, mipmaps + 1):
            payload = _read_exact(stream, _read_int32(stream))
            details = describe_image(payload)
            if details is None:
                logger.warning(
                    f"Mipmap {number} of '{entry.path}' is not a readable image; "
                    "writing it unchanged."
                )
            else:
                image_format, (width, height) = details
                logger.info(
                    f" Mipmap {number}: {len(payload)} bytes ({image_format} {width}x{height})"
                )
            target = resolve_output_path(output_dir, f"{entry.path}._mipmap_{number}{extension}")
            outputs.append(write_output(target, payload))
        return Conversion(entry, Outcome.COPY, tuple(outputs))

    if raw_format == TextureFormat.BASIS_UNIVERSAL:
        # TODO: transcode Basis Universal (KTX2) payloads to PNG.
        logger.warning(
            f"Basis Universal texture '{entry.path}' cannot be converted to PNG yet "
            "(known gap); the entry is skipped."
        )
        return Conversion(entry, Outcome.DROPPED)

    try:
        format_name = TextureFormat(raw_format).name
    except ValueError:
        format_name = str(raw_format)
    logger.warning(
        f"Cannot convert compressed texture '{entry.path}': "
        f"format {format_name} is not supported."
    )
    return Conversion(entry, Outcome.DROPPED)


def convert_stream_texture(stream: BinaryIO, entry: PackEntry, output_dir: Path) -> Conversion:
    """Strip the header of a Godot 3 ``.stex`` file down to its PNG/WebP data."""

    _skip(stream, 12)  # magic, width, custom width, height, custom height
    format_bits = _read_uint32(stream)
    if format_bits & STREAM_TEXTURE_FORMAT_PNG:
        extension = ".png"
    elif format_bits & STREAM_TEXTURE_FORMAT_WEBP:
        extension = ".webp"
    else:
        logger.warning(f"Encountered unknown stream texture format for '{entry.path}'.")
        _skip(stream, 12)  # data format, mipmaps, size
        magic = _read_exact(stream, 4)
        extension = ".webp" if magic == WEBP_MAGIC else ".png"

    converted = entry.with_extension(".stex", extension).shrink(STREAM_TEXTURE_HEADER_SIZE)
    return Conversion(converted, Outcome.COPY)


def convert_ogg_stream(stream: BinaryIO, entry: PackEntry, output_dir: Path) -> Conversion:
    converted = entry.shrink(OGG_STREAM_HEADER_SIZE, OGG_STREAM_TRAILER_SIZE)
    return Conversion(converted.with_extension(".oggstr", ".ogg"), Outcome.COPY)


def build_wav(payload: bytes, format_code: int, channels: int, sample_rate: int) -> bytes:
    """Return a canonical 44-byte RIFF/WAVE header followed by ``payload``."""

    try:
        bytes_per_sample = BYTES_PER_SAMPLE[WavFormat(format_code)]
    except ValueError:
        raise ResourceFormatError(f"unknown WAV format: {format_code}") from None

    byte_rate = sample_rate * channels * bytes_per_sample
    if not 0 < sample_rate <= 0xFFFFFFFF or byte_rate > 0xFFFFFFFF:
        raise ResourceFormatError(f"sample rate {sample_rate} cannot be stored in a WAV header")

    header = WAV_HEADER.pack(
        b"RIFF",
        36 + len(payload),
        b"WAVE",
        b"fmt ",
        16,
        format_code,
        channels,
        sample_rate,
        byte_rate,
        channels * bytes_per_sample,
        bytes_per_sample * 8,
        b"data",
        len(payload),
    )
    return header + payload


def convert_wav_sample(stream: BinaryIO, entry: PackEntry, output_dir: Path) -> Conversion:
    """Rebuild a ``.sample`` audio resource as a ``.wav`` file."""

    resource = parse_resource(stream, entry.offset, entry.path)
    if resource is None:
        return Conversion(entry, Outcome.COPY)

    if resource.name not in AUDIO_RESOURCE_TYPES:
        raise ResourceFormatError(
            f"'{entry.path}' holds a {resource.name} resource, not an audio stream"
        )

    properties = resource.properties
    payload = expect_variant(properties, "data", RawArrayVariant)
    format_code = expect_variant(properties, "format", (IntVariant, Int64Variant))
    stereo = expect_variant(properties, "stereo", BoolVariant, False)
    sample_rate = expect_variant(properties, "mix_rate", (IntVariant, Int64Variant), DEFAULT_MIX_RATE)

    if format_code in (WavFormat.IMA_ADPCM, WavFormat.QOA):
        logger.warning(
            f"'{entry.path}' uses a WAV format ({WavFormat(format_code).name}) that is not "
            "supported by this tool. The output file may not be playable."
        )

    wav = build_wav(payload, format_code, 2 if stereo else 1, sample_rate)
    converted = entry.with_extension(".sample", ".wav")
    target = write_output(resolve_output_path(output_dir, converted.path), wav)
    return Conversion(converted, Outcome.WRITTEN, (target,))


CONVERTERS: Dict[SourceFormat, Callable[[BinaryIO, PackEntry, Path], Conversion]] = {
    SourceFormat.COMPRESSED_TEXTURE: convert_compressed_texture,
    SourceFormat.STREAM_TEXTURE: convert_stream_texture,
    SourceFormat.OGG_STREAM: convert_ogg_stream,
    SourceFormat.WAV_SAMPLE: convert_wav_sample,
}


def convert_entry(stream: BinaryIO, entry: PackEntry, output_dir: Path) -> Conversion:
    """Run the converter matching the entry extension, if there is one."""

    converter = CONVERTERS.get(detect_source_format(entry.path))
    if converter is None:
        return Conversion(entry, Outcome.COPY)
    stream.seek(entry.offset)
    conversion = converter(stream, entry, output_dir)
    if conversion.entry.path != entry.path:
        logger.info(f"Converted '{entry.path}' -> '{conversion.entry.path}'")
    return conversion


# -------------------------------------------------------------- extraction --


def compute_digest(payload: bytes) -> bytes:
    return hashlib.md5(payload).digest()


def verify_entry(entry: PackEntry, payload: bytes) -> bool:
    """Compare ``payload`` against the digest stored in the directory."""

    digest = compute_digest(payload)
    if digest == entry.digest:
        return True
    logger.warning(
        f"Hash mismatch for '{entry.path}'. Got MD5 of {digest.hex()}, "
        f"expected {entry.digest.hex()}!"
    )
    return False


def extract_pack(
    stream: BinaryIO,
    index: PackIndex,
    output_dir: Path,
    *,
    convert: bool = False,
    verify: bool = False,
) -> List[Path]:
    """Write every entry of ``index`` below ``output_dir``.

    Returns the paths of all files written, including extra files produced by
    converters.
    """

    if convert and verify:
        raise ValueError("convert and verify cannot be combined; converted data differs from packed data")

    output_dir.mkdir(parents=True, exist_ok=True)
    written: List[Path] = []
    for entry in index.entries:
        if entry.offset < index.index_end:
            logger.warning(
                f"Skipping invalid entry '{entry.path}'. "
                f"(offset {entry.offset} < index end {index.index_end})"
            )
            continue

        if convert:
            conversion = convert_entry(stream, entry, output_dir)
            written.extend(conversion.outputs)
            if conversion.outcome is not Outcome.COPY:
                continue
            entry = conversion.entry

        stream.seek(entry.offset)
        payload = _read_exact(stream, entry.size)
        if verify:
            verify_entry(entry, payload)

        logger.debug(f"Extracting '{entry.path}' ({entry.size} bytes)")
        written.append(write_output(resolve_output_path(output_dir, entry.path), payload))

    return written


def default_output_dir(input_path: Path) -> Path:
    return input_path.parent / input_path.stem


def open_pack(input_path: Path) -> Tuple[BinaryIO, PackIndex]:
    """Open ``input_path`` and parse its directory.

    The caller owns the returned stream and must close it.
    """

    stream = input_path.open("rb")
    try:
        return stream, read_pack_index(stream)
    except Exception:
        stream.close()
        raise


def unpack(
    input_path: Path,
    output_dir: Path | None = None,
    *,
    convert: bool = False,
    verify: bool = False,
) -> List[Path]:
    """Extract ``input_path`` into ``output_dir`` (defaults to a sibling folder)."""

    if output_dir is None:
        output_dir = default_output_dir(input_path)
    stream, index = open_pack(input_path)
    with stream:
        return extract_pack(stream, index, output_dir, convert=convert, verify=verify)


# --------------------------------------------------------------------- cli --


def build_cli() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="A Godot Engine package unpacker.")
    parser.add_argument("input", type=Path, nargs="?", help="path to the .pck file or an executable with an embedded package")
    parser.add_argument(
        "output",
        type=Path,
        nargs="?",
        help="directory that will receive the extracted files (default: next to the input)",
    )
    parser.add_argument("-c", "--convert", action="store_true", help="convert common formats")
    parser.add_argument(
        "-v",
        "--verify",
        action="store_true",
        help="verify extracted files against their MD5 hashes",
    )
    parser.add_argument("-q", "--quiet", action="store_true", help="only report warnings and errors")
    return parser


def main(argv: Iterable[str] | None = None) -> int:
    parser = build_cli()
    args = parser.parse_args(None if argv is None else list(argv))

    if args.input is None:
        parser.print_help()
        return 0
    if args.convert and args.verify:
        print(
            "Cannot use --convert and --verify together due to converted data "
            "being different from packed data."
        )
        return 0

    logging.basicConfig(level=logging.WARNING if args.quiet else logging.INFO, format="%(message)s")

    output_dir = args.output or default_output_dir(args.input)
    logger.info(f"Input file: {args.input}")
    logger.info(f"Output directory: {output_dir}")
    if not args.input.is_file():
        logger.error(f"Input file '{args.input}' does not exist.")
        return 0

    try:
        written = unpack(args.input, output_dir, convert=args.convert, verify=args.verify)
    except PCKError as exc:
        logger.error(f"Extraction failed: {exc}")
        return 1

    logger.info(f"Extraction complete. {len(written)} file(s) written to {output_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
