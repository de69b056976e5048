"""Parse an avatar GLB / VRM: hierarchy, rest-pose TRS, skins, mesh data, humanoid mapping."""

import json
import logging
import struct
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .bone_config import VRM0_RENAMES, match_humanoid_bones
from .exceptions import AvatarFormatError
from .transforms import decompose_matrix

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# GLB constants
# ---------------------------------------------------------------------------
GLB_MAGIC = 0x46546C67
GLB_VERSION = 2
CHUNK_JSON = 0x4E4F534A
CHUNK_BIN = 0x004E4942

# glTF component type → (struct fmt, byte size)
_COMP = {
    5120: ("b", 1),
    5121: ("B", 1),
    5122: ("h", 2),
    5123: ("H", 2),
    5125: ("I", 4),
    5126: ("f", 4),
}

# Divisors for normalized integer accessors
_NORM_DIV = {
    5120: 127.0,
    5121: 255.0,
    5122: 32767.0,
    5123: 65535.0,
}

# glTF type → element count
_TYPE_COUNT = {
    "SCALAR": 1,
    "VEC2": 2,
    "VEC3": 3,
    "VEC4": 4,
    "MAT2": 4,
    "MAT3": 9,
    "MAT4": 16,
}


@dataclass
class SkinData:
    joints: list  # node index per skin joint
    inverse_bind_matrices: np.ndarray  # (N, 4, 4) row-major


@dataclass
class MeshPrimitive:
    node: int
    skin: Optional[int]
    positions: np.ndarray  # (V, 3) bind-pose / mesh-space positions
    joints: Optional[np.ndarray] = None  # (V, K) skin-joint indices
    weights: Optional[np.ndarray] = None  # (V, K)


@dataclass
class GLBData:
    json_tree: dict
    bin_buffer: bytes
    node_names: list
    parent_indices: list  # parent index per node (-1 for roots)
    rest_local_trs: list  # [(t, r_xyzw, s), ...] per node
    skins: list = field(default_factory=list)  # [SkinData]
    primitives: list = field(default_factory=list)  # [MeshPrimitive]
    humanoid: dict = field(default_factory=dict)  # humanoid bone → node index
    view_bone: Optional[int] = None  # node the view offset is relative to
    view_offset: Optional[list] = None  # [x, y, z] meters
    vrm_version: Optional[str] = None  # "0.x", "1.0" or None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _read_accessor(gltf: dict, buf: bytes, acc_idx: int) -> np.ndarray:
    """Read a glTF accessor into a numpy array."""
    acc = gltf["accessors"][acc_idx]
    comp_type = acc["componentType"]
    fmt, bsz = _COMP[comp_type]
    count = acc["count"]
    n_components = _TYPE_COUNT[acc["type"]]

    if "sparse" in acc:
        log.warning("Accessor %d is sparse; sparse values are ignored", acc_idx)

    if "bufferView" not in acc:
        # glTF: no bufferView means all zeros
        return np.zeros((count, n_components), dtype=np.float64)

    bv = gltf["bufferViews"][acc["bufferView"]]
    byte_offset = bv.get("byteOffset", 0) + acc.get("byteOffset", 0)
    byte_stride = bv.get("byteStride", 0)

    if byte_stride and byte_stride != bsz * n_components:
        # Strided access
        out = np.empty((count, n_components), dtype=np.float64)
        for i in range(count):
            off = byte_offset + i * byte_stride
            vals = struct.unpack_from(f"<{n_components}{fmt}", buf, off)
            out[i] = vals
    else:
        total = count * n_components
        data = struct.unpack_from(f"<{total}{fmt}", buf, byte_offset)
        out = np.array(data, dtype=np.float64).reshape(count, n_components)

    if acc.get("normalized") and comp_type in _NORM_DIV:
        out = np.maximum(out / _NORM_DIV[comp_type], -1.0)
    return out


def _node_local_trs(node: dict):
    """Extract (translation, rotation_xyzw, scale) from a glTF node."""
    if "matrix" in node:
        return decompose_matrix(node["matrix"])
    t = node.get("translation", [0.0, 0.0, 0.0])
    r = node.get("rotation", [0.0, 0.0, 0.0, 1.0])  # glTF default = identity xyzw
    s = node.get("scale", [1.0, 1.0, 1.0])
    return (list(t), list(r), list(s))


def read_glb(path: str):
    """Split a GLB file into its json tree and binary chunk."""
    with open(path, "rb") as f:
        raw = f.read()

    if len(raw) < 20:
        raise AvatarFormatError(f"Not a GLB file (too short): {path}")

    # --- GLB header ---
    magic, version, total_len = struct.unpack_from("<III", raw, 0)
    if magic != GLB_MAGIC:
        raise AvatarFormatError(f"Not a GLB file: {path}")
    if version != GLB_VERSION:
        raise AvatarFormatError(f"Unsupported GLB version {version}: {path}")

    # --- JSON chunk ---
    json_len, json_type = struct.unpack_from("<II", raw, 12)
    if json_type != CHUNK_JSON:
        raise AvatarFormatError(f"First GLB chunk is not JSON: {path}")
    json_bytes = raw[20 : 20 + json_len]
    gltf = json.loads(json_bytes.decode("utf-8"))

    # --- BIN chunk (optional) ---
    bin_buffer = b""
    bin_offset = 20 + json_len
    if bin_offset + 8 <= min(total_len, len(raw)):
        bin_len, bin_type = struct.unpack_from("<II", raw, bin_offset)
        if bin_type != CHUNK_BIN:
            raise AvatarFormatError(f"Second GLB chunk is not BIN: {path}")
        bin_buffer = raw[bin_offset + 8 : bin_offset + 8 + bin_len]

    return gltf, bin_buffer


def _humanoid_from_vrm(gltf: dict):
    """Humanoid mapping and version from a VRM extension, if any."""
    ext = gltf.get("extensions", {})

    vrm1 = ext.get("VRMC_vrm")
    if vrm1 is not None:
        bones = vrm1.get("humanoid", {}).get("humanBones", {})
        mapping = {name: entry["node"] for name, entry in bones.items()
                   if isinstance(entry, dict) and entry.get("node", -1) >= 0}
        return mapping, "1.0"

    vrm0 = ext.get("VRM")
    if vrm0 is not None:
        mapping = {}
        for entry in vrm0.get("humanoid", {}).get("humanBones", []):
            name = entry.get("bone")
            node = entry.get("node", -1)
            if name is None or node < 0:
                continue
            mapping[VRM0_RENAMES.get(name, name)] = node
        return mapping, "0.x"

    return {}, None


def _view_from_vrm(gltf: dict, humanoid: dict, vrm_version):
    """(view bone node, offset) from the VRM look-at / first-person data."""
    ext = gltf.get("extensions", {})
    head = humanoid.get("head")

    if vrm_version == "1.0":
        offset = ext["VRMC_vrm"].get("lookAt", {}).get("offsetFromHeadBone")
        if offset is not None and head is not None:
            return head, [float(v) for v in offset]
    elif vrm_version == "0.x":
        first_person = ext["VRM"].get("firstPerson", {})
        bone = first_person.get("firstPersonBone", -1)
        if bone is None or bone < 0:
            bone = head
        offset = first_person.get("firstPersonBoneOffset")
        if offset is not None and bone is not None:
            return bone, [float(offset.get(k, 0.0)) for k in ("x", "y", "z")]

    return None, None


# ---------------------------------------------------------------------------
# Main parser
# ---------------------------------------------------------------------------

def parse_glb(path: str) -> GLBData:
    """Parse an avatar GLB / VRM and return all skeleton, skin and mesh data."""
    gltf, bin_buffer = read_glb(path)

    nodes = gltf.get("nodes", [])
    node_names = [node.get("name", f"node_{ni}") for ni, node in enumerate(nodes)]

    # Parent map from hierarchy
    parent_indices = [-1] * len(nodes)
    for ni, node in enumerate(nodes):
        for ci in node.get("children", []):
            parent_indices[ci] = ni

    rest_local_trs = [_node_local_trs(node) for node in nodes]

    # --- Skins ---
    skins = []
    for skin in gltf.get("skins", []):
        joints = list(skin["joints"])
        if "inverseBindMatrices" in skin:
            ibm_raw = _read_accessor(gltf, bin_buffer, skin["inverseBindMatrices"])
            # glTF stores matrices column-major
            ibms = ibm_raw.reshape(len(joints), 4, 4).transpose(0, 2, 1)
        else:
            ibms = np.tile(np.eye(4), (len(joints), 1, 1))
        skins.append(SkinData(joints=joints, inverse_bind_matrices=ibms))

    # --- Mesh primitives (only what the floor / height measurement needs) ---
    primitives = []
    for ni, node in enumerate(nodes):
        if "mesh" not in node:
            continue
        skin_idx = node.get("skin")
        for prim in gltf["meshes"][node["mesh"]].get("primitives", []):
            attrs = prim.get("attributes", {})
            if "POSITION" not in attrs:
                continue
            positions = _read_accessor(gltf, bin_buffer, attrs["POSITION"])
            joints = weights = None
            if skin_idx is not None and "JOINTS_0" in attrs and "WEIGHTS_0" in attrs:
                j_sets, w_sets = [], []
                k = 0
                while f"JOINTS_{k}" in attrs and f"WEIGHTS_{k}" in attrs:
                    j_sets.append(_read_accessor(gltf, bin_buffer, attrs[f"JOINTS_{k}"]))
                    w_sets.append(_read_accessor(gltf, bin_buffer, attrs[f"WEIGHTS_{k}"]))
                    k += 1
                joints = np.hstack(j_sets).astype(np.int64)
                weights = np.hstack(w_sets)
            primitives.append(MeshPrimitive(
                node=ni,
                skin=skin_idx if joints is not None else None,
                positions=positions,
                joints=joints,
                weights=weights,
            ))

    # --- Humanoid mapping ---
    humanoid, vrm_version = _humanoid_from_vrm(gltf)
    if not humanoid:
        humanoid = match_humanoid_bones(node_names)
        log.info("No VRM humanoid data; matched %d bones by name", len(humanoid))

    view_bone, view_offset = _view_from_vrm(gltf, humanoid, vrm_version)

    return GLBData(
        json_tree=gltf,
        bin_buffer=bin_buffer,
        node_names=node_names,
        parent_indices=parent_indices,
        rest_local_trs=rest_local_trs,
        skins=skins,
        primitives=primitives,
        humanoid=humanoid,
        view_bone=view_bone,
        view_offset=view_offset,
        vrm_version=vrm_version,
    )
