"""Synthetic humanoid avatars written as real GLB files for the tests.

T-pose, identity rotations, facing +Z, left side on +X, floor at Y = 0.
Known measurements of the unscaled avatar are exported as constants.
"""

import numpy as np

from immersive_scaler.bone_config import VRM0_RENAMES
from immersive_scaler.glb_writer import pack_glb

TOTAL_HEIGHT = 1.78
EYE_HEIGHT = 1.62
LEG_Y = 0.90
NECK_Y = 1.45
HEAD_Y = 1.55
VIEW_OFFSET = (0.0, 0.07, 0.08)

_BODY = [
    ("hips", None, (0.0, 0.95, 0.0)),
    ("spine", "hips", (0.0, 0.10, 0.0)),
    ("chest", "spine", (0.0, 0.15, 0.0)),
    ("upperChest", "chest", (0.0, 0.12, 0.0)),
    ("neck", "upperChest", (0.0, 0.13, 0.0)),
    ("head", "neck", (0.0, 0.10, 0.0)),
    ("HeadTop_End", "head", (0.0, 0.23, 0.0)),
    ("leftEye", "head", (0.03, 0.07, 0.08)),
    ("rightEye", "head", (-0.03, 0.07, 0.08)),
]

# Per side, x is mirrored for the right side
_LIMBS = [
    ("UpperLeg", "hips", (0.09, -0.05, 0.0)),
    ("LowerLeg", "UpperLeg", (0.0, -0.42, 0.0)),
    ("Foot", "LowerLeg", (0.0, -0.40, 0.0)),
    ("Toes", "Foot", (0.0, -0.05, 0.12)),
    ("Shoulder", "upperChest", (0.02, 0.08, 0.0)),
    ("UpperArm", "Shoulder", (0.10, 0.0, 0.0)),
    ("LowerArm", "UpperArm", (0.26, 0.0, 0.0)),
    ("Hand", "LowerArm", (0.24, 0.0, 0.0)),
    ("ThumbMetacarpal", "Hand", (0.02, -0.01, 0.03)),
    ("ThumbProximal", "ThumbMetacarpal", (0.025, 0.0, 0.02)),
    ("ThumbDistal", "ThumbProximal", (0.02, 0.0, 0.01)),
    ("IndexProximal", "Hand", (0.075, 0.0, 0.025)),
    ("IndexIntermediate", "IndexProximal", (0.03, 0.0, 0.006)),
    ("IndexDistal", "IndexIntermediate", (0.02, 0.0, 0.003)),
    ("MiddleProximal", "Hand", (0.08, 0.0, 0.0)),
    ("MiddleIntermediate", "MiddleProximal", (0.03, 0.0, 0.0)),
    ("MiddleDistal", "MiddleIntermediate", (0.025, 0.0, 0.0)),
    ("RingProximal", "Hand", (0.075, 0.0, -0.012)),
    ("RingIntermediate", "RingProximal", (0.028, 0.0, -0.004)),
    ("RingDistal", "RingIntermediate", (0.02, 0.0, -0.002)),
    ("LittleProximal", "Hand", (0.065, 0.0, -0.03)),
    ("LittleIntermediate", "LittleProximal", (0.022, 0.0, -0.008)),
    ("LittleDistal", "LittleIntermediate", (0.016, 0.0, -0.004)),
]

_LIMB_PARENTS_ON_BODY = {"hips", "upperChest"}

_MIXAMO_BODY = {
    "hips": "Hips", "spine": "Spine", "chest": "Spine1", "upperChest": "Spine2",
    "neck": "Neck", "head": "Head", "HeadTop_End": "HeadTop_End",
    "leftEye": "LeftEye", "rightEye": "RightEye",
}
_MIXAMO_LIMB = {
    "UpperLeg": "UpLeg", "LowerLeg": "Leg", "Foot": "Foot", "Toes": "ToeBase",
    "Shoulder": "Shoulder", "UpperArm": "Arm", "LowerArm": "ForeArm", "Hand": "Hand",
}
_MIXAMO_FINGER = {"Thumb": "Thumb", "Index": "Index", "Middle": "Middle",
                  "Ring": "Ring", "Little": "Pinky"}
_MIXAMO_SEGMENT = {"Proximal": 1, "Intermediate": 2, "Distal": 3}
_MIXAMO_THUMB_SEGMENT = {"Metacarpal": 1, "Proximal": 2, "Distal": 3}


def skeleton_layout():
    """[(humanoid-or-node name, parent name, local translation)] in parent-first order."""
    layout = list(_BODY)
    for side, sign in (("left", 1.0), ("right", -1.0)):
        for part, parent, (x, y, z) in _LIMBS:
            parent_name = parent if parent in _LIMB_PARENTS_ON_BODY else f"{side}{parent}"
            layout.append((f"{side}{part}", parent_name, (sign * x, y, z)))
    return layout


def _mixamo_name(name: str) -> str:
    if name in _MIXAMO_BODY:
        return "mixamorig:" + _MIXAMO_BODY[name]
    side = "Left" if name.startswith("left") else "Right"
    part = name[len(side):]
    if part in _MIXAMO_LIMB:
        return f"mixamorig:{side}{_MIXAMO_LIMB[part]}"
    for finger, mixamo in _MIXAMO_FINGER.items():
        if part.startswith(finger):
            segment = part[len(finger):]
            index = (_MIXAMO_THUMB_SEGMENT if finger == "Thumb" else _MIXAMO_SEGMENT)[segment]
            return f"mixamorig:{side}Hand{mixamo}{index}"
    raise KeyError(name)


class _Bin:
    def __init__(self):
        self.data = bytearray()
        self.views = []
        self.accessors = []

    def add(self, array: np.ndarray, acc_type: str, comp_type: int) -> int:
        dtype = {5126: np.float32, 5123: np.uint16}[comp_type]
        raw = np.ascontiguousarray(array, dtype=dtype).tobytes()
        self.views.append({"buffer": 0, "byteOffset": len(self.data), "byteLength": len(raw)})
        self.data += raw + b"\x00" * ((4 - len(raw) % 4) % 4)
        accessor = {
            "bufferView": len(self.views) - 1,
            "componentType": comp_type,
            "count": int(array.shape[0]),
            "type": acc_type,
        }
        if acc_type == "VEC3":
            accessor["min"] = np.asarray(array).min(axis=0).tolist()
            accessor["max"] = np.asarray(array).max(axis=0).tolist()
        self.accessors.append(accessor)
        return len(self.accessors) - 1


def build_gltf(vrm="1.0", names="humanoid", with_mesh=True, hips_as_matrix=False):
    """(json tree, bin bytes) of the synthetic avatar."""
    layout = skeleton_layout()
    index = {name: i + 1 for i, (name, _, _) in enumerate(layout)}

    nodes = [{"name": "Armature", "children": [index["hips"]]}]
    world = {}
    for name, parent, t in layout:
        node_name = _mixamo_name(name) if names == "mixamo" else name
        nodes.append({"name": node_name, "translation": list(t)})
        world[name] = np.array(t) + (world[parent] if parent else 0.0)
        if parent:
            nodes[index[parent]].setdefault("children", []).append(index[name])

    if hips_as_matrix:
        hips = nodes[index["hips"]]
        t = hips.pop("translation")
        hips["matrix"] = [1, 0, 0, 0, 0, 1, 0, 0, 0, 0, 1, 0, t[0], t[1], t[2], 1]

    gltf = {
        "asset": {"version": "2.0", "generator": "immersive_scaler tests"},
        "scene": 0,
        "scenes": [{"nodes": [0]}],
        "nodes": nodes,
    }
    bin_data = _Bin()

    if with_mesh:
        joints = [index[name] for name, _, _ in layout]
        skin_index = {name: k for k, (name, _, _) in enumerate(layout)}
        ibms = np.tile(np.eye(4), (len(layout), 1, 1))
        for k, (name, _, _) in enumerate(layout):
            ibms[k, :3, 3] = -world[name]

        verts = [
            ((0.09, 0.0, 0.10), "leftFoot"),
            ((-0.09, 0.0, 0.10), "rightFoot"),
            ((0.0, TOTAL_HEIGHT, 0.0), "head"),
            ((0.0, 0.95, 0.12), "hips"),
            ((0.62, 1.40, 0.0), "leftHand"),
            ((-0.62, 1.40, 0.0), "rightHand"),
        ]
        positions = np.array([p for p, _ in verts])
        joint_ids = np.zeros((len(verts), 4))
        weights = np.zeros((len(verts), 4))
        for v, (_, bone) in enumerate(verts):
            joint_ids[v, 0] = skin_index[bone]
            weights[v, 0] = 1.0

        ibm_acc = bin_data.add(ibms.transpose(0, 2, 1).reshape(-1, 16), "MAT4", 5126)
        pos_acc = bin_data.add(positions, "VEC3", 5126)
        joints_acc = bin_data.add(joint_ids, "VEC4", 5123)
        weights_acc = bin_data.add(weights, "VEC4", 5126)

        body = len(nodes)
        nodes.append({"name": "Body", "mesh": 0, "skin": 0})
        nodes[0]["children"].append(body)
        gltf["meshes"] = [{"name": "Body", "primitives": [{
            "mode": 0,
            "attributes": {"POSITION": pos_acc, "JOINTS_0": joints_acc, "WEIGHTS_0": weights_acc},
        }]}]
        gltf["skins"] = [{"joints": joints, "inverseBindMatrices": ibm_acc}]

    humanoid = {name: index[name] for name, _, _ in layout if name != "HeadTop_End"}
    if vrm == "1.0":
        gltf["extensionsUsed"] = ["VRMC_vrm"]
        gltf["extensions"] = {"VRMC_vrm": {
            "specVersion": "1.0",
            "humanoid": {"humanBones": {name: {"node": ni} for name, ni in humanoid.items()}},
            "lookAt": {"offsetFromHeadBone": list(VIEW_OFFSET)},
        }}
    elif vrm == "0.x":
        to_vrm0 = {new: old for old, new in VRM0_RENAMES.items()}
        gltf["extensionsUsed"] = ["VRM"]
        gltf["extensions"] = {"VRM": {
            "humanoid": {"humanBones": [{"bone": to_vrm0.get(name, name), "node": ni}
                                        for name, ni in humanoid.items()]},
            "firstPerson": {
                "firstPersonBone": index["head"],
                "firstPersonBoneOffset": dict(zip(("x", "y", "z"), VIEW_OFFSET)),
            },
        }}

    if bin_data.accessors:
        gltf["accessors"] = bin_data.accessors
        gltf["bufferViews"] = bin_data.views
        gltf["buffers"] = [{"byteLength": len(bin_data.data)}]
    return gltf, bytes(bin_data.data)


def write_avatar(path, **kwargs):
    gltf, bin_buffer = build_gltf(**kwargs)
    pack_glb(gltf, bin_buffer, str(path))
    return path
