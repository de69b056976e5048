"""Scaling parameters and the single-pass rescale of an avatar."""

import logging
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Optional

import numpy as np
import yaml

from . import measurements as ms
from .bone_config import ARM_CHAIN, DEFAULTS, EYE_OFFSET, LEG_CHAIN, RANGES, SIDES
from .exceptions import ScalingError
from .skeleton import Avatar
from .tools import shrink_hip_bone, spread_fingers

log = logging.getLogger(__name__)


@dataclass
class ScalingParameters:
    """One rescale request. Percent-valued fields are 0-100."""
    target_height: float = DEFAULTS["target_height"]
    upper_body_percentage: float = DEFAULTS["upper_body_percentage"]
    custom_scale_ratio: float = DEFAULTS["custom_scale_ratio"]
    arm_thickness: float = DEFAULTS["arm_thickness"]
    leg_thickness: float = DEFAULTS["leg_thickness"]
    thigh_percentage: float = DEFAULTS["thigh_percentage"]
    scale_hand: bool = DEFAULTS["scale_hand"]
    scale_foot: bool = DEFAULTS["scale_foot"]
    scale_eyes: bool = DEFAULTS["scale_eyes"]
    center_model: bool = DEFAULTS["center_model"]
    extra_leg_length: float = DEFAULTS["extra_leg_length"]
    scale_relative: bool = DEFAULTS["scale_relative"]
    arm_to_legs: float = DEFAULTS["arm_to_legs"]
    keep_head_size: bool = DEFAULTS["keep_head_size"]
    skip_main_rescale: bool = DEFAULTS["skip_main_rescale"]
    skip_move_to_floor: bool = DEFAULTS["skip_move_to_floor"]
    skip_height_scaling: bool = DEFAULTS["skip_height_scaling"]
    use_bone_based_floor_calculation: bool = DEFAULTS["use_bone_based_floor_calculation"]
    apply_finger_spreading: bool = DEFAULTS["apply_finger_spreading"]
    finger_spread_factor: float = DEFAULTS["finger_spread_factor"]
    spare_thumb: bool = DEFAULTS["spare_thumb"]
    apply_shrink_hip_bone: bool = DEFAULTS["apply_shrink_hip_bone"]
    target_height_method: str = DEFAULTS["target_height_method"]
    arm_to_height_ratio_method: str = DEFAULTS["arm_to_height_ratio_method"]
    arm_to_height_height_method: str = DEFAULTS["arm_to_height_height_method"]
    upper_body_use_neck: bool = DEFAULTS["upper_body_use_neck"]
    upper_body_torso_use_neck: bool = DEFAULTS["upper_body_torso_use_neck"]
    upper_body_use_legacy: bool = DEFAULTS["upper_body_use_legacy"]

    @property
    def height_method(self) -> str:
        """Height the target refers to; `scale_eyes` forces the eye height."""
        return "eye_height" if self.scale_eyes else self.target_height_method

    @classmethod
    def from_dict(cls, data: dict) -> "ScalingParameters":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ScalingError(f"Unknown scaling parameter(s): {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: str) -> "ScalingParameters":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ScalingError(f"Parameter file must hold a mapping: {path}")
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        return asdict(self)

    def validate(self) -> None:
        for name, (lo, hi) in RANGES.items():
            value = getattr(self, name)
            if not lo <= value <= hi:
                raise ScalingError(f"{name}={value} is outside [{lo}, {hi}]")
        for name in ("target_height_method", "arm_to_height_height_method"):
            if getattr(self, name) not in ms.HEIGHT_METHODS:
                raise ScalingError(f"{name}={getattr(self, name)!r} is not one of {ms.HEIGHT_METHODS}")
        if self.arm_to_height_ratio_method not in ms.ARM_METHODS:
            raise ScalingError(
                f"arm_to_height_ratio_method={self.arm_to_height_ratio_method!r} "
                f"is not one of {ms.ARM_METHODS}")


@dataclass
class ScaleResult:
    leg_scale: float = 1.0
    arm_scale: float = 1.0
    height_scale: float = 1.0
    floor_offset: float = 0.0
    before: dict = field(default_factory=dict)
    after: dict = field(default_factory=dict)


def current_parameters(avatar: Avatar, base: Optional[ScalingParameters] = None) -> ScalingParameters:
    """Parameters describing the avatar as it is now ("get current values").

    Method and toggle settings are taken from `base`; the numeric targets are
    measured so that scaling with the result leaves the avatar unchanged.
    """
    base = base or ScalingParameters()
    bone_based = base.use_bone_based_floor_calculation
    return replace(
        base,
        target_height=ms.height_by_method(avatar, base.height_method, bone_based),
        upper_body_percentage=ms.upper_body_by_params(avatar, base) * 100.0,
        custom_scale_ratio=ms.arm_to_height_ratio(
            avatar, base.arm_to_height_ratio_method, base.arm_to_height_height_method, bone_based),
        arm_thickness=ms.current_arm_thickness(avatar) * 100.0,
        leg_thickness=ms.current_leg_thickness(avatar) * 100.0,
        thigh_percentage=ms.thigh_percentage(avatar) * 100.0,
        extra_leg_length=0.0,
    )


def _cross(factor: float, thickness: float) -> float:
    """Cross-axis factor: `thickness` 1 keeps the original girth, 0 scales with length."""
    return thickness + factor * (1.0 - thickness)


# ---------------------------------------------------------------------------
# Main rescale
# ---------------------------------------------------------------------------

def _new_leg_length(avatar: Avatar, params: ScalingParameters, leg_y: float) -> float:
    """Floor-to-upper-leg height that gives the requested upper-body ratio."""
    ratio = params.upper_body_percentage / 100.0
    if params.upper_body_use_legacy:
        top_num = top_den = ms.eye_height(avatar)
    else:
        neck = avatar.bone_position("neck")
        head = avatar.bone_position("head")
        top_num = neck if params.upper_body_torso_use_neck else head
        top_den = neck if params.upper_body_use_neck else head
        if top_num is None or top_den is None:
            raise ScalingError("Avatar needs neck and head bones for the upper body ratio")
        top_num, top_den = float(top_num[1]), float(top_den[1])

    # ratio = (top_num - leg_y) / (top_den - leg_y + new_leg)
    return (top_num - leg_y) / ratio - (top_den - leg_y) + params.extra_leg_length


def _scale_leg(avatar: Avatar, side: str, new_leg: float, floor: float,
               params: ScalingParameters, base: np.ndarray) -> None:
    names = [f"{side}{part}" for part in LEG_CHAIN]
    nodes = [avatar.bone(name) for name in names]
    if any(ni is None for ni in nodes):
        log.warning("Skipping %s leg: missing %s", side, names)
        return
    thigh_ni, calf_ni, foot_ni = nodes

    world = avatar.world_matrices()
    hip, knee, ankle = (world[ni, :3, 3] for ni in nodes)
    thigh = np.linalg.norm(knee - hip)
    calf = np.linalg.norm(ankle - knee)
    old_leg = hip[1] - floor

    if params.scale_foot:
        k = new_leg / old_leg
    else:
        # Feet keep their size: only the hip-to-ankle drop changes
        chain = hip[1] - ankle[1]
        if chain <= 1e-6:
            raise ScalingError(f"{side} leg has no vertical extent")
        k = (new_leg - (ankle[1] - floor)) / chain
    if k <= 0:
        raise ScalingError(f"Requested proportions need a non-positive {side} leg length")

    p = params.thigh_percentage / 100.0
    thigh_factor = p * (thigh + calf) * k / thigh
    calf_factor = (1.0 - p) * (thigh + calf) * k / calf
    t = params.leg_thickness / 100.0

    avatar.set_effective_scale(thigh_ni, base[thigh_ni] * avatar.axis_factors(
        thigh_ni, calf_ni, thigh_factor, _cross(thigh_factor, t)))
    avatar.set_effective_scale(calf_ni, base[calf_ni] * avatar.axis_factors(
        calf_ni, foot_ni, calf_factor, _cross(calf_factor, t)))
    avatar.set_effective_scale(foot_ni, base[foot_ni] * (k if params.scale_foot else 1.0))
    log.debug("%s leg: thigh x%.4f, calf x%.4f", side, thigh_factor, calf_factor)


def _scale_legs(avatar: Avatar, params: ScalingParameters, base: np.ndarray) -> float:
    bone_based = params.use_bone_based_floor_calculation
    leg_y = ms.upper_leg_height(avatar)
    if leg_y is None:
        log.warning("No upper leg bones; leg proportions left unchanged")
        return 1.0

    floor = ms.lowest_point(avatar, bone_based)
    old_leg = leg_y - floor
    if old_leg <= 1e-6:
        raise ScalingError("Upper legs are not above the floor")

    new_leg = _new_leg_length(avatar, params, leg_y)
    if new_leg <= 0:
        raise ScalingError(
            f"Upper body percentage {params.upper_body_percentage:.1f}% cannot be reached")

    for side in SIDES:
        _scale_leg(avatar, side, new_leg, floor, params, base)
    return new_leg / old_leg


def _solve_arm_scale(avatar: Avatar, params: ScalingParameters) -> float:
    reach = ms.arm_reach(avatar, params.arm_to_height_ratio_method, params.scale_hand)
    if reach is None:
        log.warning("Arm bones missing; arm proportions left unchanged")
        return 1.0

    bone_based = params.use_bone_based_floor_calculation
    ratio_height = ms.height_by_method(avatar, params.arm_to_height_height_method, bone_based)

    # The uniform height scale still to come multiplies the reach but the
    # eye offset in the ratio is absolute
    uniform = 1.0
    if not params.skip_height_scaling:
        current = ms.height_by_method(avatar, params.height_method, bone_based)
        if current > 0:
            uniform = params.target_height / current
    if ratio_height * uniform <= EYE_OFFSET:
        raise ScalingError(f"Cannot solve arm scale: {params.arm_to_height_height_method} is too small")
    target = params.custom_scale_ratio * (ratio_height * uniform - EYE_OFFSET) / uniform

    scale = reach.solve(target)
    if scale is None or scale <= 0:
        raise ScalingError(
            f"Arm ratio {params.custom_scale_ratio:.4f} needs a non-positive arm scale")
    return float(scale)


def _scale_arms(avatar: Avatar, params: ScalingParameters, base: np.ndarray,
                leg_scale: float) -> float:
    if params.scale_relative:
        scale = 1.0 + (leg_scale - 1.0) * params.arm_to_legs / 100.0
        if scale <= 0:
            raise ScalingError("Relative arm scale is non-positive")
    else:
        scale = _solve_arm_scale(avatar, params)

    t = params.arm_thickness / 100.0
    for side in SIDES:
        names = [f"{side}{part}" for part in ARM_CHAIN]
        nodes = [avatar.bone(name) for name in names]
        if any(ni is None for ni in nodes):
            log.warning("Skipping %s arm: missing %s", side, names)
            continue
        upper_ni, lower_ni, hand_ni = nodes
        factors = avatar.axis_factors(upper_ni, lower_ni, scale, _cross(scale, t))
        avatar.set_effective_scale(upper_ni, base[upper_ni] * factors)
        factors = avatar.axis_factors(lower_ni, hand_ni, scale, _cross(scale, t))
        avatar.set_effective_scale(lower_ni, base[lower_ni] * factors)
        avatar.set_effective_scale(hand_ni, base[hand_ni] * (scale if params.scale_hand else 1.0))
    return scale


# ---------------------------------------------------------------------------
# Whole-avatar steps
# ---------------------------------------------------------------------------

def scale_to_height(avatar: Avatar, target: float, method: str = "eye_height",
                    bone_based: bool = False, keep_head: bool = False) -> float:
    """Uniformly scale the avatar root so `method` measures `target`.

    With `keep_head` the head (and a view point under it) keeps its world
    size. Heights are then affine in the root factor, so one trial scale is
    enough to solve for the exact factor.
    """
    current = ms.height_by_method(avatar, method, bone_based)
    if current <= 1e-6:
        raise ScalingError(f"Cannot scale to height: current {method} is {current:.4f}")
    ratio = target / current
    head = avatar.bone("head") if keep_head else None
    if head is None:
        avatar.scales[avatar.avatar_root] *= ratio
        if avatar.view_offset is not None:
            avatar.view_offset = avatar.view_offset * ratio
        return ratio

    root = avatar.avatar_root
    root_scale = avatar.scales[root].copy()
    head_scale = avatar.effective_scale(head)
    view_offset = avatar.view_offset
    view_on_head = avatar.view_bone in avatar.descendants(head)

    def apply(r):
        avatar.scales[root] = root_scale * r
        avatar.set_effective_scale(head, head_scale)
        if view_offset is not None:
            avatar.view_offset = view_offset.copy() if view_on_head else view_offset * r

    apply(ratio)
    if abs(ratio - 1.0) > 1e-9:
        slope = (ms.height_by_method(avatar, method, bone_based) - current) / (ratio - 1.0)
        if slope <= 1e-9:
            raise ScalingError(f"Cannot scale {method} while keeping the head size")
        ratio = 1.0 + (target - current) / slope
        if ratio <= 0.0:
            raise ScalingError(f"Target {method} {target:.4f} is below the head alone")
        apply(ratio)
    return ratio


def move_to_floor(avatar: Avatar, bone_based: bool = False) -> float:
    """Translate the avatar so its lowest point sits at Y = 0."""
    offset = ms.lowest_point(avatar, bone_based)
    avatar.translations[avatar.avatar_root, 1] -= offset
    return offset


def center_model(avatar: Avatar) -> None:
    """Put the hips over the origin on X and Z."""
    hips = avatar.bone_position("hips")
    root = avatar.avatar_root
    avatar.translations[root, 0] -= hips[0]
    avatar.translations[root, 2] -= hips[2]


def scale_avatar(avatar: Avatar, params: ScalingParameters) -> ScaleResult:
    """Rescale `avatar` in place to match `params` (single pass)."""
    params.validate()
    bone_based = params.use_bone_based_floor_calculation
    result = ScaleResult(before=ms.measure_all(avatar, params))
    snap = avatar.snapshot()

    world = avatar.world_matrices()
    base = np.linalg.norm(world[:, :3, :3], axis=1)  # (N, 3) effective scales

    try:
        if params.apply_shrink_hip_bone:
            shrink_hip_bone(avatar)

        if not params.skip_main_rescale:
            result.leg_scale = _scale_legs(avatar, params, base)
            result.arm_scale = _scale_arms(avatar, params, base, result.leg_scale)
            log.info("Leg scale %.4f, arm scale %.4f", result.leg_scale, result.arm_scale)

        if not params.skip_height_scaling:
            result.height_scale = scale_to_height(
                avatar, params.target_height, params.height_method, bone_based,
                keep_head=params.keep_head_size)
            log.info("Height scale %.4f", result.height_scale)

        if not params.skip_move_to_floor:
            result.floor_offset = move_to_floor(avatar, bone_based)

        if params.center_model:
            center_model(avatar)

        if params.apply_finger_spreading:
            spread_fingers(avatar, params.finger_spread_factor, params.spare_thumb)
    except ScalingError:
        avatar.restore(snap)
        raise

    result.after = ms.measure_all(avatar, params)
    return result
