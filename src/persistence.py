"""
Binary map persistence.

File layout:
- Header: magic ``b"WMAP"`` and a uint32 format version
- Keyframe collection, ascending keyframe id
- Landmark collection

Each collection is a uint64 entry count followed by, per entry, a uint8
presence tag (0 for a null entry) and the record body. Cross-entity
references (observation slots, parent, children, covisibility neighbours,
observing keyframes, reference keyframe) are stored as int64 ids with -1
meaning "none". The reader builds an id table of every decoded record and
resolves references through it, so cyclic graphs never duplicate bodies.

Dense matrices are stored as ``cols:int32, rows:int32, elem_size:uint64,
elem_type:uint64`` followed by ``rows * cols * elem_size`` raw bytes, where
``elem_type`` is the OpenCV type code. All scalars and matrix buffers are
little-endian.
"""

from __future__ import annotations

import io
import logging
import os
import struct
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Iterable, List, Optional, Sequence

import cv2
import numpy as np

from world_map import Keyframe, Landmark

LOGGER = logging.getLogger(__name__)

MAGIC = b"WMAP"
FORMAT_VERSION = 2  # Version 1 was the legacy layout with a duplicated keypoint response

NO_ID = -1

_HEADER = struct.Struct("<4sI")
_MATRIX_HEADER = struct.Struct("<iiQQ")
_KEYPOINT = struct.Struct("<fiifff")  # angle, class_id, octave, response, x, y
_COUNT = struct.Struct("<Q")
_TAG = struct.Struct("<B")
_INT64 = struct.Struct("<q")
_FLOAT64 = struct.Struct("<d")

_ID_DTYPE = np.dtype("<i8")
_PAIR_DTYPE = np.dtype([("id", "<i8"), ("value", "<i4")])

# OpenCV depth codes, channels are packed above them as CV_MAKETYPE does
_CN_SHIFT = 3
_DEPTH_BY_DTYPE = {
    np.dtype(np.uint8): cv2.CV_8U,
    np.dtype(np.int8): cv2.CV_8S,
    np.dtype(np.uint16): cv2.CV_16U,
    np.dtype(np.int16): cv2.CV_16S,
    np.dtype(np.int32): cv2.CV_32S,
    np.dtype(np.float32): cv2.CV_32F,
    np.dtype(np.float64): cv2.CV_64F,
    np.dtype(np.float16): cv2.CV_16F,
}
_DTYPE_BY_DEPTH = {depth: dtype for dtype, depth in _DEPTH_BY_DTYPE.items()}


class MapFormatError(ValueError):
    """Raised when map data is truncated, foreign or inconsistent."""


class MapSaveError(OSError):
    """Raised when a map cannot be written to its destination."""


@dataclass
class DecodedMap:
    """Flat result of decoding a map file."""

    keyframes: List[Optional[Keyframe]] = field(default_factory=list)
    landmarks: List[Optional[Landmark]] = field(default_factory=list)

    # Id-remap tables built while decoding
    keyframe_table: Dict[int, Keyframe] = field(default_factory=dict)
    landmark_table: Dict[int, Landmark] = field(default_factory=dict)

    dangling_references: int = 0


# ---------------------------------------------------------------------- #
# Primitive readers / writers
# ---------------------------------------------------------------------- #
def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if data is None or len(data) != size:
        raise MapFormatError(f"Unexpected end of map data (wanted {size} bytes)")
    return data


def _unpack(stream: BinaryIO, fmt: struct.Struct):
    return fmt.unpack(_read_exact(stream, fmt.size))


def _write_id(stream: BinaryIO, value: Optional[int]):
    stream.write(_INT64.pack(NO_ID if value is None else int(value)))


def _read_id(stream: BinaryIO) -> Optional[int]:
    (value,) = _unpack(stream, _INT64)
    return None if value == NO_ID else value


def _write_ids(stream: BinaryIO, ids: Sequence[Optional[int]]):
    values = np.array([NO_ID if v is None else v for v in ids], dtype=_ID_DTYPE)
    stream.write(_COUNT.pack(len(values)))
    stream.write(values.tobytes())


def _read_ids(stream: BinaryIO) -> List[Optional[int]]:
    (count,) = _unpack(stream, _COUNT)
    values = np.frombuffer(_read_exact(stream, count * _ID_DTYPE.itemsize), dtype=_ID_DTYPE)
    return [None if v == NO_ID else int(v) for v in values]


def _write_pairs(stream: BinaryIO, pairs: Dict[int, int]):
    values = np.array(sorted(pairs.items()), dtype=_PAIR_DTYPE) if pairs else np.empty(0, dtype=_PAIR_DTYPE)
    stream.write(_COUNT.pack(len(values)))
    stream.write(values.tobytes())


def _read_pairs(stream: BinaryIO) -> Dict[int, int]:
    (count,) = _unpack(stream, _COUNT)
    values = np.frombuffer(_read_exact(stream, count * _PAIR_DTYPE.itemsize), dtype=_PAIR_DTYPE)
    return {int(row["id"]): int(row["value"]) for row in values}


# ---------------------------------------------------------------------- #
# Matrix payload
# ---------------------------------------------------------------------- #
def write_matrix(stream: BinaryIO, matrix: np.ndarray):
    """Write a 2-D (or rows x cols x channels) array as a matrix payload."""
    matrix = np.asarray(matrix)
    if matrix.ndim == 2:
        rows, cols = matrix.shape
        channels = 1
    elif matrix.ndim == 3:
        rows, cols, channels = matrix.shape
    else:
        raise ValueError(f"Matrix payload must be 2-D or 3-D, got {matrix.ndim}-D")

    native = matrix.dtype.newbyteorder("=")
    depth = _DEPTH_BY_DTYPE.get(native)
    if depth is None:
        raise ValueError(f"Unsupported matrix element type: {matrix.dtype}")

    # Contiguous little-endian copy; never encode a stale strided layout
    buffer = np.ascontiguousarray(matrix, dtype=native.newbyteorder("<"))
    elem_size = native.itemsize * channels
    elem_type = depth + ((channels - 1) << _CN_SHIFT)

    stream.write(_MATRIX_HEADER.pack(cols, rows, elem_size, elem_type))
    stream.write(buffer.tobytes())


def read_matrix(stream: BinaryIO) -> np.ndarray:
    """Read a matrix payload written by :func:`write_matrix`."""
    cols, rows, elem_size, elem_type = _unpack(stream, _MATRIX_HEADER)
    if cols < 0 or rows < 0:
        raise MapFormatError(f"Negative matrix shape {rows}x{cols}")

    depth = elem_type & ((1 << _CN_SHIFT) - 1)
    channels = (elem_type >> _CN_SHIFT) + 1
    dtype = _DTYPE_BY_DEPTH.get(depth)
    if dtype is None:
        raise MapFormatError(f"Unknown matrix element type {elem_type}")
    if elem_size != dtype.itemsize * channels:
        raise MapFormatError(
            f"Element size {elem_size} does not match type {elem_type} ({dtype} x {channels})"
        )

    data = _read_exact(stream, rows * cols * elem_size)
    shape = (rows, cols) if channels == 1 else (rows, cols, channels)
    return np.frombuffer(data, dtype=dtype.newbyteorder("<")).reshape(shape).astype(dtype)


def write_optional_matrix(stream: BinaryIO, matrix: Optional[np.ndarray]):
    """Write a matrix, storing ``None`` as an empty 0x0 matrix."""
    if matrix is None:
        matrix = np.empty((0, 0), dtype=np.uint8)
    write_matrix(stream, matrix)


def read_optional_matrix(stream: BinaryIO) -> Optional[np.ndarray]:
    """Read a matrix; empty matrices come back as ``None``."""
    matrix = read_matrix(stream)
    return None if matrix.size == 0 else matrix


def encode_matrix(matrix: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    write_matrix(buffer, matrix)
    return buffer.getvalue()


def decode_matrix(data: bytes) -> np.ndarray:
    stream = io.BytesIO(data)
    matrix = read_matrix(stream)
    if stream.tell() != len(data):
        raise MapFormatError(f"{len(data) - stream.tell()} trailing bytes after matrix payload")
    return matrix


# ---------------------------------------------------------------------- #
# Keypoint payload
# ---------------------------------------------------------------------- #
def write_keypoint(stream: BinaryIO, keypoint: cv2.KeyPoint):
    stream.write(_KEYPOINT.pack(
        keypoint.angle,
        keypoint.class_id,
        keypoint.octave,
        keypoint.response,
        keypoint.pt[0],
        keypoint.pt[1],
    ))


def read_keypoint(stream: BinaryIO) -> cv2.KeyPoint:
    angle, class_id, octave, response, x, y = _unpack(stream, _KEYPOINT)
    # Keypoint size is not persisted
    return cv2.KeyPoint(x, y, 0.0, angle, response, octave, class_id)


def _write_keypoints(stream: BinaryIO, keypoints: Sequence[cv2.KeyPoint]):
    stream.write(_COUNT.pack(len(keypoints)))
    for keypoint in keypoints:
        write_keypoint(stream, keypoint)


def _read_keypoints(stream: BinaryIO) -> List[cv2.KeyPoint]:
    (count,) = _unpack(stream, _COUNT)
    return [read_keypoint(stream) for _ in range(count)]


# ---------------------------------------------------------------------- #
# Entity records
# ---------------------------------------------------------------------- #
def write_keyframe(stream: BinaryIO, keyframe: Keyframe):
    with keyframe._lock:
        _write_id(stream, keyframe.id)
        stream.write(_FLOAT64.pack(keyframe.timestamp))
        stream.write(_TAG.pack(1 if keyframe.bad else 0))
        write_matrix(stream, keyframe.pose)
        write_optional_matrix(stream, keyframe.tcp)
        _write_keypoints(stream, keyframe.keypoints)
        _write_keypoints(stream, keyframe.keypoints_un)
        write_optional_matrix(stream, keyframe.descriptors)
        _write_ids(stream, keyframe.landmark_ids)
        _write_id(stream, keyframe.parent_id)
        _write_ids(stream, sorted(keyframe.children_ids))
        _write_pairs(stream, keyframe.connected_weights)


def read_keyframe(stream: BinaryIO) -> Keyframe:
    keyframe_id = _read_id(stream)
    (timestamp,) = _unpack(stream, _FLOAT64)
    (bad,) = _unpack(stream, _TAG)
    pose = read_matrix(stream)
    tcp = read_optional_matrix(stream)
    keypoints = _read_keypoints(stream)
    keypoints_un = _read_keypoints(stream)
    descriptors = read_optional_matrix(stream)
    landmark_ids = _read_ids(stream)
    parent_id = _read_id(stream)
    children_ids = set(_read_ids(stream))
    connected_weights = _read_pairs(stream)

    if keyframe_id is None:
        raise MapFormatError("Keyframe record without an id")

    return Keyframe(
        id=keyframe_id,
        timestamp=timestamp,
        pose=pose,
        keypoints=keypoints,
        keypoints_un=keypoints_un,
        descriptors=descriptors,
        landmark_ids=landmark_ids,
        parent_id=parent_id,
        children_ids={c for c in children_ids if c is not None},
        connected_weights=connected_weights,
        tcp=tcp,
        bad=bool(bad),
    )


def write_landmark(stream: BinaryIO, landmark: Landmark):
    with landmark._lock:
        _write_id(stream, landmark.id)
        stream.write(_TAG.pack(1 if landmark.bad else 0))
        write_matrix(stream, landmark.position)
        write_optional_matrix(stream, landmark.normal)
        write_optional_matrix(stream, landmark.descriptor)
        stream.write(_FLOAT64.pack(landmark.min_distance))
        stream.write(_FLOAT64.pack(landmark.max_distance))
        _write_id(stream, landmark.reference_keyframe_id)
        _write_pairs(stream, landmark.observations)


def read_landmark(stream: BinaryIO) -> Landmark:
    landmark_id = _read_id(stream)
    (bad,) = _unpack(stream, _TAG)
    position = read_matrix(stream)
    normal = read_optional_matrix(stream)
    descriptor = read_optional_matrix(stream)
    (min_distance,) = _unpack(stream, _FLOAT64)
    (max_distance,) = _unpack(stream, _FLOAT64)
    reference_keyframe_id = _read_id(stream)
    observations = _read_pairs(stream)

    if landmark_id is None:
        raise MapFormatError("Landmark record without an id")

    return Landmark(
        id=landmark_id,
        position=position,
        observations=observations,
        descriptor=descriptor,
        normal=normal,
        min_distance=min_distance,
        max_distance=max_distance,
        reference_keyframe_id=reference_keyframe_id,
        bad=bool(bad),
    )


def _write_collection(stream: BinaryIO, entities: Sequence, write_entity):
    stream.write(_COUNT.pack(len(entities)))
    for entity in entities:
        if entity is None:
            stream.write(_TAG.pack(0))
            continue
        stream.write(_TAG.pack(1))
        write_entity(stream, entity)


def _read_collection(stream: BinaryIO, read_entity) -> List:
    (count,) = _unpack(stream, _COUNT)
    entities = []
    for _ in range(count):
        (present,) = _unpack(stream, _TAG)
        if present == 0:
            entities.append(None)
        elif present == 1:
            entities.append(read_entity(stream))
        else:
            raise MapFormatError(f"Invalid entry tag {present}")
    return entities


# ---------------------------------------------------------------------- #
# Whole map
# ---------------------------------------------------------------------- #
def write_map(
    stream: BinaryIO,
    keyframes: Sequence[Optional[Keyframe]],
    landmarks: Sequence[Optional[Landmark]],
):
    """Write both collections in the given order."""
    stream.write(_HEADER.pack(MAGIC, FORMAT_VERSION))
    _write_collection(stream, keyframes, write_keyframe)
    _write_collection(stream, landmarks, write_landmark)


def _build_table(entities: Iterable, kind: str) -> Dict:
    table = {}
    for entity in entities:
        if entity is None:
            continue
        if entity.id in table:
            LOGGER.warning("Duplicate %s id %d in map data, keeping the last record", kind, entity.id)
        table[entity.id] = entity
    return table


def _resolve_references(decoded: DecodedMap):
    """Drop references to ids that have no decoded record."""
    keyframes = decoded.keyframe_table
    landmarks = decoded.landmark_table
    dangling = 0

    for keyframe in keyframes.values():
        for slot, landmark_id in enumerate(keyframe.landmark_ids):
            if landmark_id is not None and landmark_id not in landmarks:
                keyframe.landmark_ids[slot] = None
                dangling += 1
        if keyframe.parent_id is not None and keyframe.parent_id not in keyframes:
            keyframe.parent_id = None
            dangling += 1
        missing_children = {c for c in keyframe.children_ids if c not in keyframes}
        keyframe.children_ids -= missing_children
        dangling += len(missing_children)
        for other_id in [k for k in keyframe.connected_weights if k not in keyframes]:
            del keyframe.connected_weights[other_id]
            dangling += 1

    for landmark in landmarks.values():
        for keyframe_id in [k for k in landmark.observations if k not in keyframes]:
            del landmark.observations[keyframe_id]
            dangling += 1
        if landmark.reference_keyframe_id not in landmark.observations:
            landmark.reference_keyframe_id = next(iter(landmark.observations), None)

    decoded.dangling_references = dangling
    if dangling:
        LOGGER.warning("Dropped %d references to entities missing from the map data", dangling)


def read_map(stream: BinaryIO) -> DecodedMap:
    """Decode both collections and resolve their references."""
    magic, version = _unpack(stream, _HEADER)
    if magic != MAGIC:
        raise MapFormatError(f"Not a map file (magic {magic!r})")
    if version != FORMAT_VERSION:
        raise MapFormatError(f"Unsupported map format version {version}")

    keyframes = _read_collection(stream, read_keyframe)
    landmarks = _read_collection(stream, read_landmark)

    decoded = DecodedMap(
        keyframes=keyframes,
        landmarks=landmarks,
        keyframe_table=_build_table(keyframes, "keyframe"),
        landmark_table=_build_table(landmarks, "landmark"),
    )
    _resolve_references(decoded)
    return decoded


def save_map(filepath: str, keyframes: Iterable[Keyframe], landmarks: Iterable[Landmark]):
    """
    Save keyframes (sorted by ascending id) and landmarks to a file.

    The map is fully encoded in memory first and then swapped in place of
    the destination, so a failed save leaves any previous file untouched.

    Raises:
        MapSaveError: If a record cannot be encoded or the destination
            cannot be written
    """
    ordered = sorted(keyframes, key=lambda kf: kf.id)
    landmarks = list(landmarks)

    buffer = io.BytesIO()
    try:
        write_map(buffer, ordered, landmarks)
    except (ValueError, struct.error) as e:
        raise MapSaveError(f"Cannot encode map for {filepath}: {e}") from e

    tmp_path = f"{filepath}.tmp"
    try:
        with open(tmp_path, "wb") as f:
            f.write(buffer.getbuffer())
        os.replace(tmp_path, filepath)
    except OSError as e:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise MapSaveError(f"Cannot write map file {filepath}: {e}") from e

    LOGGER.info("Map saved to %s (%d keyframes, %d landmarks)",
                filepath, len(ordered), len(landmarks))


def load_map(filepath: Optional[str]) -> Optional[DecodedMap]:
    """
    Load a map file.

    Returns:
        The decoded map, or None if no path was given or the file cannot be
        opened (e.g. first run without a saved map)

    Raises:
        MapFormatError: If the file exists but its content is not a valid map
    """
    if not filepath:
        LOGGER.warning("Map file path is empty")
        return None
    try:
        f = open(filepath, "rb")
    except OSError as e:
        LOGGER.warning("Cannot open map file %s (%s), starting with an empty map", filepath, e)
        return None

    with f:
        decoded = read_map(f)

    LOGGER.info("Map decoded from %s (%d keyframes, %d landmarks)",
                filepath, len(decoded.keyframes), len(decoded.landmarks))
    return decoded
