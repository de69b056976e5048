import re
from pathlib import Path

import yaml

_CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

with open(_CONFIG_PATH) as f:
    _cfg = yaml.safe_load(f)

# Humanoid bone names in VRM 1.0 naming, config order
HUMANOID_BONES = list(_cfg["humanoid_bones"].keys())

NAME_PREFIXES = list(_cfg["name_prefixes"])
VRM0_RENAMES = dict(_cfg["vrm0_renames"])

DEFAULTS = dict(_cfg["defaults"])
FALLBACKS = dict(_cfg["fallbacks"])
RANGES = {k: tuple(v) for k, v in _cfg["ranges"].items()}
EYE_OFFSET = float(_cfg["eye_offset"])
HIP_SHRINK_FRACTION = float(_cfg["hip_shrink_fraction"])

SIDES = ("left", "right")
FINGERS = ("Thumb", "Index", "Middle", "Ring", "Little")

# Per-side limb chains: first bone -> last bone
LEG_CHAIN = ("UpperLeg", "LowerLeg", "Foot")
ARM_CHAIN = ("UpperArm", "LowerArm", "Hand")

# Kinematic chains over humanoid names (used for drawing the skeleton)
KINEMATIC_CHAIN = [
    ["hips", "spine", "chest", "upperChest", "neck", "head"],
    ["hips", "leftUpperLeg", "leftLowerLeg", "leftFoot", "leftToes"],
    ["hips", "rightUpperLeg", "rightLowerLeg", "rightFoot", "rightToes"],
    ["upperChest", "leftShoulder", "leftUpperArm", "leftLowerArm", "leftHand"],
    ["upperChest", "rightShoulder", "rightUpperArm", "rightLowerArm", "rightHand"],
]
for _side in SIDES:
    for _finger in FINGERS:
        _segments = (("Metacarpal", "Proximal", "Distal") if _finger == "Thumb"
                     else ("Proximal", "Intermediate", "Distal"))
        KINEMATIC_CHAIN.append(
            [f"{_side}Hand"] + [f"{_side}{_finger}{s}" for s in _segments])

# Named color → RGBA (0-255)
_COLOR_NAME_TO_RGBA = {
    "blue": [0, 0, 255, 255],
    "green": [0, 180, 0, 255],
    "red": [255, 0, 0, 255],
    "skyblue": [135, 206, 235, 255],
    "cyan": [0, 255, 255, 255],
    "purple": [128, 0, 128, 255],
    "gray": [128, 128, 128, 255],
    "black": [40, 40, 40, 255],
    "pink": [255, 192, 203, 255],
    "orange": [255, 165, 0, 255],
    "yellow": [255, 255, 0, 255],
}

COLORS = {role: _COLOR_NAME_TO_RGBA.get(name, [40, 40, 40, 255])
          for role, name in _cfg["color_map"].items()}


def normalize_name(name: str) -> str:
    """Lowercase and drop separators: 'J_Bip_L_UpperArm' → 'jbiplupperarm'."""
    return re.sub(r"[._\-\s:|]", "", name.lower())


# Normalized alias → humanoid bone name
_ALIASES = {}
for bone, aliases in _cfg["humanoid_bones"].items():
    for alias in [bone] + list(aliases):
        # First assignment wins
        _ALIASES.setdefault(normalize_name(alias), bone)


def _name_candidates(name: str) -> list:
    norm = normalize_name(name)
    candidates = [norm]
    for prefix in NAME_PREFIXES:
        if norm.startswith(prefix) and len(norm) > len(prefix):
            candidates.append(norm[len(prefix):])
    return candidates


def match_humanoid_bones(node_names: list) -> dict:
    """Map humanoid bone name → node index by matching node names to aliases."""
    mapping = {}
    for ni, name in enumerate(node_names):
        if not name:
            continue
        for candidate in _name_candidates(name):
            bone = _ALIASES.get(candidate)
            if bone is not None:
                mapping.setdefault(bone, ni)
                break
    return mapping


def finger_bone(side: str, finger: str, segment: str) -> str:
    return f"{side}{finger}{segment}"


def fingertip_bone(side: str) -> str:
    """The bone whose position stands in for a fingertip."""
    return finger_bone(side, "Middle", "Distal")
