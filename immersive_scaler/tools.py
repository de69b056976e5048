"""Additional avatar tools: finger spreading, hip-bone shrinking, scale reset."""

import logging

import numpy as np

from .bone_config import HIP_SHRINK_FRACTION, SIDES
from .skeleton import Avatar
from .transforms import qmul, quat_from_axis_angle, signed_angle

log = logging.getLogger(__name__)

_FIRST_SEGMENTS = {
    "Thumb": ("Metacarpal", "Proximal", "Distal"),
    "Index": ("Proximal", "Intermediate", "Distal"),
    "Middle": ("Proximal", "Intermediate", "Distal"),
    "Ring": ("Proximal", "Intermediate", "Distal"),
    "Little": ("Proximal", "Intermediate", "Distal"),
}


def _finger_base(avatar: Avatar, side: str, finger: str):
    """(base node, next node or None) of a finger: its first two present segments."""
    present = [avatar.bone(f"{side}{finger}{seg}") for seg in _FIRST_SEGMENTS[finger]]
    present = [ni for ni in present if ni is not None]
    if not present:
        return None, None
    return present[0], present[1] if len(present) > 1 else None


def _finger_direction(base: int, nxt, hand_pos, world) -> np.ndarray:
    start = world[base, :3, 3]
    if nxt is None:
        return start - hand_pos
    return world[nxt, :3, 3] - start


def _rotate_in_world(avatar: Avatar, ni: int, axis_world: np.ndarray, angle: float, world) -> None:
    """Rotate node `ni` about its own origin by `angle` around a world axis."""
    pi = avatar.parent_indices[ni]
    axis = axis_world
    if pi >= 0:
        axis = np.linalg.inv(world[pi, :3, :3]) @ axis_world
    q = quat_from_axis_angle(axis, angle)
    avatar.rotations[ni] = qmul(q, avatar.rotations[ni])


def spread_fingers(avatar: Avatar, factor: float = 1.0, spare_thumb: bool = True) -> int:
    """Fan the fingers out (factor > 1) or together (factor < 1) around the palm normal.

    Each finger's angle to the middle finger, measured in the palm plane, is
    multiplied by `factor`. Returns the number of fingers rotated.
    """
    fingers = ["Index", "Ring", "Little"]
    if not spare_thumb:
        fingers.insert(0, "Thumb")

    rotated = 0
    for side in SIDES:
        hand = avatar.bone(f"{side}Hand")
        mid_base, mid_next = _finger_base(avatar, side, "Middle")
        idx_base, _ = _finger_base(avatar, side, "Index")
        lit_base, _ = _finger_base(avatar, side, "Little")
        if hand is None or mid_base is None or idx_base is None or lit_base is None:
            log.warning("Skipping %s hand: needs hand, index, middle and little fingers", side)
            continue

        world = avatar.world_matrices()
        hand_pos = world[hand, :3, 3]
        reference = _finger_direction(mid_base, mid_next, hand_pos, world)
        across = world[idx_base, :3, 3] - world[lit_base, :3, 3]
        normal = np.cross(reference, across)
        if np.linalg.norm(normal) < 1e-10:
            log.warning("Skipping %s hand: degenerate palm", side)
            continue
        normal = normal / np.linalg.norm(normal)

        for finger in fingers:
            base, nxt = _finger_base(avatar, side, finger)
            if base is None:
                continue
            world = avatar.world_matrices()
            direction = _finger_direction(base, nxt, hand_pos, world)
            angle = signed_angle(reference, direction, normal)
            _rotate_in_world(avatar, base, normal, (factor - 1.0) * angle, world)
            rotated += 1
    return rotated


def shrink_hip_bone(avatar: Avatar) -> bool:
    """Move the hips up toward the spine without moving anything else.

    The hips end up `HIP_SHRINK_FRACTION` of the way from the upper legs to
    the spine, under the spine on X/Z. Children keep their world positions
    and the skin is rebound so the mesh does not move.
    """
    hips = avatar.bone("hips")
    spine = avatar.bone_position("spine")
    legs = [avatar.bone_position(f"{side}UpperLeg") for side in SIDES]
    if spine is None or any(p is None for p in legs):
        log.error("Cannot shrink hip bone: needs spine and both upper legs")
        return False

    world = avatar.world_matrices()
    old_hips = world[hips].copy()
    children = {ci: world[ci, :3, 3].copy() for ci in avatar.children_map.get(hips, [])}

    leg_y = float(np.mean([p[1] for p in legs]))
    target = np.array([spine[0], leg_y + (spine[1] - leg_y) * HIP_SHRINK_FRACTION, spine[2]])
    avatar.set_world_position(hips, target)
    for ci, pos in children.items():
        avatar.set_world_position(ci, pos)
    avatar.rebind(hips, old_hips)
    log.info("Moved hips from %.4f to %.4f", old_hips[1, 3], target[1])
    return True


def reset_scales(avatar: Avatar) -> int:
    """Set the local scale of the avatar root and everything under it to 1."""
    nodes = avatar.descendants(avatar.avatar_root)
    changed = int(np.sum(np.any(np.abs(avatar.scales[nodes] - 1.0) > 1e-9, axis=1)))
    avatar.scales[nodes] = 1.0
    return changed
