"""Avatar measurements: heights, upper-body ratios, arm reaches, proportions.

Every function takes an `Avatar` and reads its current pose; nothing is
cached between calls. Missing bones never raise: distances come back as 0.0
and ratios fall back to the configured constants with a warning.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .bone_config import EYE_OFFSET, FALLBACKS, SIDES, fingertip_bone
from .skeleton import Avatar

log = logging.getLogger(__name__)

HEIGHT_METHODS = ("total_height", "eye_height")
ARM_METHODS = (
    "head_to_elbow_vrc",
    "head_to_hand",
    "arm_length",
    "shoulder_to_fingertip",
    "center_to_hand",
    "center_to_fingertip",
)

_EPS = 1e-6


def _missing(what: str, *bones) -> None:
    log.warning("Cannot measure %s: missing bone(s) %s", what, ", ".join(bones))


def _first_present(avatar: Avatar, *names) -> Optional[str]:
    for name in names:
        if avatar.bone(name) is not None:
            return name
    return None


# ---------------------------------------------------------------------------
# Heights
# ---------------------------------------------------------------------------

def _skeleton_heights(avatar: Avatar, world) -> np.ndarray:
    nodes = avatar.skeleton_nodes()
    return world[nodes, 1, 3]


def highest_point(avatar: Avatar, bone_based: bool = False) -> float:
    world = avatar.world_matrices()
    if not bone_based:
        verts = avatar.skinned_vertices(world)
        if len(verts):
            return float(verts[:, 1].max())
    return float(_skeleton_heights(avatar, world).max())


def lowest_point(avatar: Avatar, bone_based: bool = False) -> float:
    """Absolute Y of the floor contact: lowest mesh vertex, or lowest bone."""
    world = avatar.world_matrices()
    if not bone_based:
        verts = avatar.skinned_vertices(world)
        if len(verts):
            return float(verts[:, 1].min())
        log.debug("Avatar has no mesh; using bones for the floor")
    return float(_skeleton_heights(avatar, world).min())


def eye_height(avatar: Avatar) -> float:
    """Absolute Y of the eyes: view point, else eye bones, else head."""
    world = avatar.world_matrices()
    view = avatar.view_position(world)
    if view is not None:
        return float(view[1])

    eyes = [avatar.bone_position(name, world) for name in ("leftEye", "rightEye")]
    eyes = [p for p in eyes if p is not None]
    if eyes:
        return float(np.mean([p[1] for p in eyes]))

    head = avatar.bone_position("head", world)
    if head is None:
        _missing("eye height", "head")
        return 0.0
    return float(head[1])


def total_height(avatar: Avatar, bone_based: bool = False) -> float:
    return highest_point(avatar, bone_based) - lowest_point(avatar, bone_based)


def eye_height_from_floor(avatar: Avatar, bone_based: bool = False) -> float:
    return eye_height(avatar) - lowest_point(avatar, bone_based)


def height_by_method(avatar: Avatar, method: str, bone_based: bool = False) -> float:
    if method == "total_height":
        return total_height(avatar, bone_based)
    if method == "eye_height":
        return eye_height_from_floor(avatar, bone_based)
    raise ValueError(f"Unknown height method: {method!r}")


def _bone_height_from_floor(avatar: Avatar, name: str, bone_based: bool) -> float:
    pos = avatar.bone_position(name)
    if pos is None:
        _missing(f"floor to {name}", name)
        return 0.0
    return float(pos[1]) - lowest_point(avatar, bone_based)


def floor_to_neck(avatar: Avatar, bone_based: bool = False) -> float:
    return _bone_height_from_floor(avatar, "neck", bone_based)


def floor_to_head(avatar: Avatar, bone_based: bool = False) -> float:
    return _bone_height_from_floor(avatar, "head", bone_based)


# ---------------------------------------------------------------------------
# Upper body
# ---------------------------------------------------------------------------

def upper_leg_height(avatar: Avatar) -> Optional[float]:
    """Absolute mean Y of the upper legs, or None when neither exists."""
    world = avatar.world_matrices()
    heights = [avatar.bone_position(f"{side}UpperLeg", world) for side in SIDES]
    heights = [p[1] for p in heights if p is not None]
    if not heights:
        return None
    return float(np.mean(heights))


def _legs_to(avatar: Avatar, name: str) -> float:
    leg_y = upper_leg_height(avatar)
    top = avatar.bone_position(name)
    if leg_y is None or top is None:
        _missing(f"upper legs to {name}", "leftUpperLeg/rightUpperLeg", name)
        return 0.0
    return float(top[1]) - leg_y


def upper_body_length(avatar: Avatar) -> float:
    """Vertical distance from the upper legs to the neck."""
    return _legs_to(avatar, "neck")


def leg_to_head(avatar: Avatar) -> float:
    return _legs_to(avatar, "head")


def upper_body_portion(avatar: Avatar, bone_based: bool = False) -> float:
    """Legacy ratio: (eyes - upper legs) / (eyes - floor)."""
    leg_y = upper_leg_height(avatar)
    eye = eye_height(avatar)
    height = eye - lowest_point(avatar, bone_based)
    if leg_y is None or height <= _EPS:
        log.warning("Upper body portion unavailable; using %.2f", FALLBACKS["upper_body_ratio"])
        return FALLBACKS["upper_body_ratio"]
    return (eye - leg_y) / height


def upper_body_ratio(avatar: Avatar, use_neck: bool = True, torso_use_neck: bool = True,
                     bone_based: bool = False) -> float:
    """Torso (upper legs to neck/head) over height (floor to neck/head)."""
    torso = upper_body_length(avatar) if torso_use_neck else leg_to_head(avatar)
    height = (floor_to_neck(avatar, bone_based) if use_neck
              else floor_to_head(avatar, bone_based))
    if torso <= _EPS or height <= _EPS:
        log.warning("Upper body ratio unavailable; using %.2f", FALLBACKS["upper_body_ratio"])
        return FALLBACKS["upper_body_ratio"]
    return torso / height


def alternate_upper_body_ratio(avatar: Avatar, bone_based: bool = False) -> float:
    """Upper legs to neck over the eye height."""
    torso = upper_body_length(avatar)
    height = eye_height_from_floor(avatar, bone_based)
    if torso <= _EPS or height <= _EPS:
        return FALLBACKS["upper_body_ratio"]
    return torso / height


def upper_body_by_params(avatar: Avatar, params) -> float:
    bone_based = params.use_bone_based_floor_calculation
    if params.upper_body_use_legacy:
        return upper_body_portion(avatar, bone_based)
    return upper_body_ratio(avatar, params.upper_body_use_neck,
                            params.upper_body_torso_use_neck, bone_based)


# ---------------------------------------------------------------------------
# Arms
# ---------------------------------------------------------------------------

@dataclass
class ArmReach:
    """An arm measurement as a function of the arm scale: |a + s * b|."""
    a: np.ndarray
    b: np.ndarray

    def at(self, scale: float = 1.0) -> float:
        return float(np.linalg.norm(self.a + scale * self.b))

    def solve(self, target: float) -> Optional[float]:
        """Arm scale that makes the measurement equal `target`.

        Takes the larger root of |a + s b|^2 = target^2. When the target is
        closer than the reach can get, returns the scale of closest approach.
        """
        bb = float(np.dot(self.b, self.b))
        if bb < 1e-12:
            return None
        ab = float(np.dot(self.a, self.b))
        aa = float(np.dot(self.a, self.a))
        disc = ab * ab - bb * (aa - target * target)
        if disc < 0:
            log.warning("Arm target %.4f is below the reachable minimum; clamping", target)
            return -ab / bb
        return (-ab + np.sqrt(disc)) / bb


def arm_direction(avatar: Avatar, side: str = "right", world=None) -> float:
    """+1 or -1: the world X direction the arm extends in."""
    if world is None:
        world = avatar.world_matrices()
    shoulder = avatar.bone_position(f"{side}UpperArm", world)
    elbow = avatar.bone_position(f"{side}LowerArm", world)
    if shoulder is not None and elbow is not None:
        dx = elbow[0] - shoulder[0]
        if abs(dx) > _EPS:
            return float(np.sign(dx))

    center_name = _first_present(avatar, "chest", "spine", "hips")
    if shoulder is not None and center_name is not None:
        dx = shoulder[0] - avatar.bone_position(center_name, world)[0]
        if abs(dx) > _EPS:
            return float(np.sign(dx))
    return -1.0


def _fingertip(avatar: Avatar, side: str, world) -> Optional[np.ndarray]:
    tip = avatar.bone_position(fingertip_bone(side), world)
    if tip is None:
        tip = avatar.bone_position(f"{side}Hand", world)
    return tip


def arm_reach(avatar: Avatar, method: str, scale_hand: bool = False,
              side: str = "right") -> Optional[ArmReach]:
    """The selected arm measurement as an `ArmReach`, or None if bones are missing."""
    if method not in ARM_METHODS:
        raise ValueError(f"Unknown arm method: {method!r}")

    world = avatar.world_matrices()
    head = avatar.bone_position("head", world)
    shoulder = avatar.bone_position(f"{side}UpperArm", world)
    elbow = avatar.bone_position(f"{side}LowerArm", world)
    wrist = avatar.bone_position(f"{side}Hand", world)
    zero = np.zeros(3)
    x_axis = np.array([1.0, 0.0, 0.0])

    if method in ("arm_length", "head_to_hand"):
        if shoulder is None or elbow is None or wrist is None or (
                method == "head_to_hand" and head is None):
            _missing(method, "head", f"{side}UpperArm", f"{side}LowerArm", f"{side}Hand")
            return None
        length = np.linalg.norm(elbow - shoulder) + np.linalg.norm(wrist - elbow)
        if method == "arm_length":
            return ArmReach(zero, length * x_axis)
        direction = arm_direction(avatar, side, world)
        return ArmReach(shoulder - head, direction * length * x_axis)

    if method == "head_to_elbow_vrc":
        if head is None or shoulder is None or elbow is None:
            _missing(method, "head", f"{side}UpperArm", f"{side}LowerArm")
            return None
        direction = arm_direction(avatar, side, world)
        upper_len = np.linalg.norm(elbow - shoulder)
        return ArmReach(shoulder - head, direction * upper_len * x_axis)

    if shoulder is None or wrist is None:
        _missing(method, f"{side}UpperArm", f"{side}Hand")
        return None
    hand_part = _fingertip(avatar, side, world) - wrist

    if method == "shoulder_to_fingertip":
        if scale_hand:
            return ArmReach(zero, wrist - shoulder + hand_part)
        return ArmReach(hand_part, wrist - shoulder)

    center_name = _first_present(avatar, "chest", "spine")
    if center_name is None:
        _missing(method, "chest/spine")
        return None
    center = avatar.bone_position(center_name, world)

    # Horizontal distance only
    a = np.array([shoulder[0] - center[0], 0.0, 0.0])
    b = np.array([wrist[0] - shoulder[0], 0.0, 0.0])
    if method == "center_to_fingertip":
        tip_x = np.array([hand_part[0], 0.0, 0.0])
        if scale_hand:
            b = b + tip_x
        else:
            a = a + tip_x
    return ArmReach(a, b)


def arm_by_method(avatar: Avatar, method: str) -> float:
    reach = arm_reach(avatar, method)
    return 0.0 if reach is None else reach.at(1.0)


def arm_length(avatar: Avatar) -> float:
    """Shoulder to elbow plus elbow to wrist."""
    return arm_by_method(avatar, "arm_length")


def shoulder_to_fingertip(avatar: Avatar) -> float:
    return arm_by_method(avatar, "shoulder_to_fingertip")


def center_to_hand(avatar: Avatar) -> float:
    return arm_by_method(avatar, "center_to_hand")


def center_to_fingertip(avatar: Avatar) -> float:
    return arm_by_method(avatar, "center_to_fingertip")


def head_to_elbow_vrc(avatar: Avatar) -> float:
    """Head to where the elbow would be with the upper arm straight out to the side."""
    return arm_by_method(avatar, "head_to_elbow_vrc")


def head_to_hand(avatar: Avatar) -> float:
    return arm_by_method(avatar, "head_to_hand")


def fingertip_to_fingertip(avatar: Avatar) -> float:
    world = avatar.world_matrices()
    tips = [_fingertip(avatar, side, world) for side in SIDES]
    if tips[0] is None or tips[1] is None:
        _missing("fingertip to fingertip", "leftHand", "rightHand")
        return 0.0
    return float(np.linalg.norm(tips[0] - tips[1]))


# ---------------------------------------------------------------------------
# Ratios
# ---------------------------------------------------------------------------

def _arm_ratio(arm: float, height: float, offset: float = 0.0) -> float:
    if arm <= _EPS or height - offset <= _EPS:
        log.warning("Arm ratio unavailable; using %.4f", FALLBACKS["arm_ratio"])
        return FALLBACKS["arm_ratio"]
    return arm / (height - offset)


def arm_to_height_ratio(avatar: Avatar, arm_method: str = "head_to_elbow_vrc",
                        height_method: str = "eye_height", bone_based: bool = False) -> float:
    """Selected arm measurement over (selected height - eye offset)."""
    return _arm_ratio(arm_by_method(avatar, arm_method),
                      height_by_method(avatar, height_method, bone_based), EYE_OFFSET)


def current_scaling(avatar: Avatar, bone_based: bool = False) -> float:
    return arm_to_height_ratio(avatar, "head_to_elbow_vrc", "eye_height", bone_based)


def simple_arm_ratio(avatar: Avatar, bone_based: bool = False) -> float:
    return _arm_ratio(arm_length(avatar), total_height(avatar, bone_based))


def arm_to_eye_ratio(avatar: Avatar, bone_based: bool = False) -> float:
    return _arm_ratio(arm_length(avatar), eye_height_from_floor(avatar, bone_based))


def head_wrist_to_eye_ratio(avatar: Avatar, bone_based: bool = False) -> float:
    return _arm_ratio(head_to_hand(avatar), eye_height_from_floor(avatar, bone_based))


def head_wrist_to_height_ratio(avatar: Avatar, bone_based: bool = False) -> float:
    return _arm_ratio(head_to_hand(avatar), total_height(avatar, bone_based))


def center_hand_to_height_ratio(avatar: Avatar, bone_based: bool = False) -> float:
    return _arm_ratio(center_to_hand(avatar), total_height(avatar, bone_based))


def center_hand_to_eye_ratio(avatar: Avatar, bone_based: bool = False) -> float:
    return _arm_ratio(center_to_hand(avatar), eye_height_from_floor(avatar, bone_based))


def center_fingertip_to_height_ratio(avatar: Avatar, bone_based: bool = False) -> float:
    return _arm_ratio(center_to_fingertip(avatar), total_height(avatar, bone_based))


def center_fingertip_to_eye_ratio(avatar: Avatar, bone_based: bool = False) -> float:
    return _arm_ratio(center_to_fingertip(avatar), eye_height_from_floor(avatar, bone_based))


# ---------------------------------------------------------------------------
# Proportions
# ---------------------------------------------------------------------------

def _limb_thickness(avatar: Avatar, bone: str, child: str) -> float:
    ni, ci = avatar.bone(bone), avatar.bone(child)
    if ni is None or ci is None:
        return FALLBACKS["thickness"]
    axis = avatar.length_axis(ni, ci)
    scale = avatar.scales[ni]
    length = scale[axis]
    cross = float(np.mean(np.delete(scale, axis)))
    # cross = t + length * (1 - t)
    if abs(1.0 - length) < 1e-4:
        return FALLBACKS["thickness"]
    return float(np.clip((cross - length) / (1.0 - length), 0.0, 1.0))


def current_arm_thickness(avatar: Avatar) -> float:
    return _limb_thickness(avatar, "rightUpperArm", "rightLowerArm")


def current_leg_thickness(avatar: Avatar) -> float:
    return _limb_thickness(avatar, "rightUpperLeg", "rightLowerLeg")


def thigh_percentage(avatar: Avatar) -> float:
    """Thigh share of the thigh + calf length (first complete leg)."""
    world = avatar.world_matrices()
    for side in ("right", "left"):
        hip = avatar.bone_position(f"{side}UpperLeg", world)
        knee = avatar.bone_position(f"{side}LowerLeg", world)
        ankle = avatar.bone_position(f"{side}Foot", world)
        if hip is None or knee is None or ankle is None:
            continue
        thigh = np.linalg.norm(knee - hip)
        calf = np.linalg.norm(ankle - knee)
        if thigh + calf > _EPS:
            return float(thigh / (thigh + calf))
    log.warning("Thigh percentage unavailable; using %.2f", FALLBACKS["thigh_ratio"])
    return FALLBACKS["thigh_ratio"]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def _floor(params) -> bool:
    return bool(params is not None and params.use_bone_based_floor_calculation)


MEASUREMENTS = {
    "total_height": lambda av, p: total_height(av, _floor(p)),
    "eye_height": lambda av, p: eye_height_from_floor(av, _floor(p)),
    "neck_height": lambda av, p: floor_to_neck(av, _floor(p)),
    "head_height": lambda av, p: floor_to_head(av, _floor(p)),
    "upper_body_length": lambda av, p: upper_body_length(av),
    "leg_to_head": lambda av, p: leg_to_head(av),
    "upper_body_neck": lambda av, p: upper_body_ratio(av, True, True, _floor(p)),
    "upper_body_head": lambda av, p: upper_body_ratio(av, False, False, _floor(p)),
    "upper_body_legacy": lambda av, p: upper_body_portion(av, _floor(p)),
    "upper_body_alternate": lambda av, p: alternate_upper_body_ratio(av, _floor(p)),
    "arm_length": lambda av, p: arm_length(av),
    "shoulder_to_fingertip": lambda av, p: shoulder_to_fingertip(av),
    "center_to_hand": lambda av, p: center_to_hand(av),
    "center_to_fingertip": lambda av, p: center_to_fingertip(av),
    "head_to_elbow_vrc": lambda av, p: head_to_elbow_vrc(av),
    "head_to_hand": lambda av, p: head_to_hand(av),
    "fingertip_to_fingertip": lambda av, p: fingertip_to_fingertip(av),
    "current_scaling": lambda av, p: current_scaling(av, _floor(p)),
    "simple_arm_ratio": lambda av, p: simple_arm_ratio(av, _floor(p)),
    "arm_to_eye_ratio": lambda av, p: arm_to_eye_ratio(av, _floor(p)),
    "head_wrist_to_eye_ratio": lambda av, p: head_wrist_to_eye_ratio(av, _floor(p)),
    "head_wrist_to_height_ratio": lambda av, p: head_wrist_to_height_ratio(av, _floor(p)),
    "center_hand_to_height_ratio": lambda av, p: center_hand_to_height_ratio(av, _floor(p)),
    "center_hand_to_eye_ratio": lambda av, p: center_hand_to_eye_ratio(av, _floor(p)),
    "center_fingertip_to_height_ratio": lambda av, p: center_fingertip_to_height_ratio(av, _floor(p)),
    "center_fingertip_to_eye_ratio": lambda av, p: center_fingertip_to_eye_ratio(av, _floor(p)),
    "arm_thickness": lambda av, p: current_arm_thickness(av),
    "leg_thickness": lambda av, p: current_leg_thickness(av),
    "thigh_percentage": lambda av, p: thigh_percentage(av),
}


def measure_all(avatar: Avatar, params=None, keys=None) -> dict:
    """{key: value} for the requested measurements (all by default)."""
    with avatar.fixed_pose():
        if params is not None:
            report = {
                "upper_body_selected": upper_body_by_params(avatar, params),
                "arm_ratio_selected": arm_to_height_ratio(
                    avatar, params.arm_to_height_ratio_method,
                    params.arm_to_height_height_method, _floor(params)),
            }
        else:
            report = {}
        for key in keys or MEASUREMENTS:
            if key in report:
                continue
            if key not in MEASUREMENTS:
                raise KeyError(f"Unknown measurement: {key!r}")
            report[key] = float(MEASUREMENTS[key](avatar, params))
    return report


# ---------------------------------------------------------------------------
# Segments for visualization
# ---------------------------------------------------------------------------

def _floor_point(p: np.ndarray, floor_y: float) -> np.ndarray:
    return np.array([p[0], floor_y, p[2]])


def _eye_point(avatar: Avatar, world) -> Optional[np.ndarray]:
    view = avatar.view_position(world)
    if view is not None:
        return view
    eyes = [avatar.bone_position(n, world) for n in ("leftEye", "rightEye")]
    eyes = [p for p in eyes if p is not None]
    if eyes:
        return np.mean(eyes, axis=0)
    return avatar.bone_position("head", world)


def _reach_segments(avatar: Avatar, method: str, world) -> list:
    reach = arm_reach(avatar, method)
    if reach is None:
        return []
    shoulder = avatar.bone_position("rightUpperArm", world)
    if method in ("head_to_elbow_vrc", "head_to_hand"):
        start = avatar.bone_position("head", world)
        end = start + reach.a + reach.b
        return [(start, end, "measurement"), (shoulder, end, "reference")]
    if method == "arm_length":
        elbow = avatar.bone_position("rightLowerArm", world)
        wrist = avatar.bone_position("rightHand", world)
        return [(shoulder, elbow, "measurement"), (elbow, wrist, "measurement")]
    if method == "shoulder_to_fingertip":
        return [(shoulder, _fingertip(avatar, "right", world), "measurement")]

    center = avatar.bone_position(_first_present(avatar, "chest", "spine"), world)
    end = (_fingertip(avatar, "right", world) if method == "center_to_fingertip"
           else avatar.bone_position("rightHand", world))
    level = np.array([end[0], center[1], center[2]])
    return [(center, level, "measurement"), (level, end, "reference")]


def measurement_segments(avatar: Avatar, key: str, params=None) -> list:
    """[(start, end, role), ...] line segments that show a measurement.

    `role` is "measurement" for the measured distance and "reference" for
    helper lines. Missing bones give an empty list.
    """
    world = avatar.world_matrices()
    floor_y = lowest_point(avatar, _floor(params))

    if key in ARM_METHODS:
        return _reach_segments(avatar, key, world)

    if key == "fingertip_to_fingertip":
        tips = [_fingertip(avatar, side, world) for side in SIDES]
        if tips[0] is None or tips[1] is None:
            return []
        return [(tips[0], tips[1], "measurement")]

    if key == "total_height":
        top = highest_point(avatar, _floor(params))
        hips = avatar.bone_position("hips", world)
        return [(_floor_point(hips, floor_y), np.array([hips[0], top, hips[2]]), "measurement")]

    if key == "eye_height":
        eye = _eye_point(avatar, world)
        if eye is None:
            return []
        return [(_floor_point(eye, floor_y), eye, "measurement")]

    if key in ("neck_height", "head_height"):
        top = avatar.bone_position("neck" if key == "neck_height" else "head", world)
        if top is None:
            return []
        return [(_floor_point(top, floor_y), top, "measurement")]

    if key in ("upper_body_neck", "upper_body_head", "upper_body_legacy", "upper_body_length",
               "leg_to_head", "upper_body_alternate"):
        leg_y = upper_leg_height(avatar)
        if key in ("upper_body_legacy", "upper_body_alternate"):
            top = _eye_point(avatar, world)
        else:
            top = avatar.bone_position(
                "head" if key in ("upper_body_head", "leg_to_head") else "neck", world)
        if leg_y is None or top is None:
            return []
        legs = np.array([top[0], leg_y, top[2]])
        # Torso above, legs below, offset sideways so both stay visible
        side = np.array([0.05, 0.0, 0.0])
        return [(legs, top, "measurement"),
                (_floor_point(legs, floor_y) + side, top + side, "reference")]

    log.warning("No visualization for measurement %r", key)
    return []
