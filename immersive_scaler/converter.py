"""Orchestrator: load → measure / scale → write GLB."""

import logging
from pathlib import Path

from .glb_writer import write_glb
from .measurements import measure_all
from .scaler import ScalingParameters, scale_avatar
from .scene_builder import build_scene
from .skeleton import Avatar

log = logging.getLogger(__name__)


def rescale(input_path, output_path, params: ScalingParameters = None):
    """Rescale one avatar file and write the result. Returns the ScaleResult."""
    params = params or ScalingParameters()
    avatar = Avatar.load(str(input_path))
    result = scale_avatar(avatar, params)
    write_glb(avatar, str(output_path))
    log.info("Wrote %s (height x%.4f)", output_path, result.height_scale)
    return result


def measure(input_path, params: ScalingParameters = None) -> dict:
    avatar = Avatar.load(str(input_path))
    return measure_all(avatar, params or ScalingParameters())


def preview(avatar: Avatar, params: ScalingParameters):
    """Scale, report, then put the avatar back exactly as it was.

    Returns (before, after) measurement reports.
    """
    snap = avatar.snapshot()
    try:
        result = scale_avatar(avatar, params)
    finally:
        avatar.restore(snap)
    return result.before, result.after


def visualize(input_path, output_path, keys=(), params: ScalingParameters = None):
    """Export the skeleton and measurement overlays of an avatar file as a .glb."""
    return export_scene(Avatar.load(str(input_path)), output_path, keys, params)


def export_scene(avatar: Avatar, output_path, keys=(), params: ScalingParameters = None):
    scene = build_scene(avatar, keys, params or ScalingParameters())
    glb_bytes = scene.export(file_type="glb")
    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    Path(output_path).write_bytes(glb_bytes)
    return output_path
