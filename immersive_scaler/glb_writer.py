"""Write a rescaled avatar back to GLB / VRM, keeping everything else in the file."""

import copy
import json
import logging
import struct
from pathlib import Path

import numpy as np

from .glb_parser import CHUNK_BIN, CHUNK_JSON, GLB_MAGIC, GLB_VERSION
from .skeleton import Avatar

log = logging.getLogger(__name__)

_IDENTITY_R = (0.0, 0.0, 0.0, 1.0)


def pack_glb(gltf: dict, bin_buffer: bytes, output_path: str) -> None:
    """Pack a json tree and binary buffer into a GLB file."""
    json_bytes = json.dumps(gltf, separators=(",", ":")).encode("utf-8")
    # Pad JSON to 4-byte alignment with spaces
    json_bytes += b" " * ((4 - len(json_bytes) % 4) % 4)
    bin_buffer = bin_buffer + b"\x00" * ((4 - len(bin_buffer) % 4) % 4)

    total_length = 12 + 8 + len(json_bytes)
    if bin_buffer:
        total_length += 8 + len(bin_buffer)

    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "wb") as f:
        f.write(struct.pack("<III", GLB_MAGIC, GLB_VERSION, total_length))
        f.write(struct.pack("<II", len(json_bytes), CHUNK_JSON))
        f.write(json_bytes)
        if bin_buffer:
            f.write(struct.pack("<II", len(bin_buffer), CHUNK_BIN))
            f.write(bin_buffer)


class _BinAppender:
    """Appends float32 accessors after the existing binary data."""

    def __init__(self, gltf: dict, old_bin: bytes):
        self.gltf = gltf
        # Existing data stays where it is; new views start on a 4-byte boundary
        self.data = bytearray(old_bin + b"\x00" * ((4 - len(old_bin) % 4) % 4))

    def append(self, data: np.ndarray, acc_type: str) -> int:
        raw = data.astype(np.float32).tobytes()
        offset = len(self.data)
        self.data += raw + b"\x00" * ((4 - len(raw) % 4) % 4)

        views = self.gltf.setdefault("bufferViews", [])
        views.append({"buffer": 0, "byteOffset": offset, "byteLength": len(raw)})

        accessors = self.gltf.setdefault("accessors", [])
        accessors.append({
            "bufferView": len(views) - 1,
            "componentType": 5126,
            "count": int(data.shape[0]),
            "type": acc_type,
        })
        return len(accessors) - 1

    def finish(self) -> bytes:
        buffers = self.gltf.setdefault("buffers", [{}])
        buffers[0]["byteLength"] = len(self.data)
        return bytes(self.data)


def _node_trs(avatar: Avatar, ni: int) -> dict:
    trs = {}
    t, r, s = avatar.translations[ni], avatar.rotations[ni], avatar.scales[ni]
    if not np.allclose(t, 0.0):
        trs["translation"] = [float(v) for v in t]
    if not np.allclose(r, _IDENTITY_R):
        r = r / np.linalg.norm(r)
        trs["rotation"] = [float(v) for v in r]
    if not np.allclose(s, 1.0):
        trs["scale"] = [float(v) for v in s]
    return trs


def _write_view_offset(gltf: dict, avatar: Avatar) -> None:
    if avatar.view_offset is None:
        return
    offset = [float(v) for v in avatar.view_offset]
    ext = gltf.get("extensions", {})
    if avatar.glb.vrm_version == "1.0":
        ext["VRMC_vrm"].setdefault("lookAt", {})["offsetFromHeadBone"] = offset
    elif avatar.glb.vrm_version == "0.x":
        first_person = ext["VRM"].setdefault("firstPerson", {})
        first_person["firstPersonBoneOffset"] = dict(zip(("x", "y", "z"), offset))


def write_glb(avatar: Avatar, output_path: str) -> None:
    """Write `avatar` with its current transforms, view point and bind matrices.

    Meshes, materials, animations and extensions are copied from the input
    unchanged. Skins whose inverse bind matrices changed get a new accessor.
    """
    gltf = copy.deepcopy(avatar.glb.json_tree)

    for ni, node in enumerate(gltf.get("nodes", [])):
        node.pop("matrix", None)
        for key in ("translation", "rotation", "scale"):
            node.pop(key, None)
        node.update(_node_trs(avatar, ni))

    _write_view_offset(gltf, avatar)

    appender = _BinAppender(gltf, avatar.glb.bin_buffer)
    rebound = 0
    for si, skin in enumerate(avatar.glb.skins):
        ibms = avatar.inverse_bind_matrices[si]
        if np.allclose(ibms, skin.inverse_bind_matrices):
            continue
        # glTF stores matrices column-major
        flat = ibms.transpose(0, 2, 1).reshape(len(ibms), 16)
        gltf["skins"][si]["inverseBindMatrices"] = appender.append(flat, "MAT4")
        rebound += 1

    if rebound:
        bin_buffer = appender.finish()
        log.info("Rebound %d skin(s)", rebound)
    else:
        bin_buffer = avatar.glb.bin_buffer

    pack_glb(gltf, bin_buffer, output_path)
