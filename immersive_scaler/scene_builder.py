"""Build a trimesh.Scene showing the skeleton and selected measurements."""

import numpy as np
import trimesh

from .bone_config import COLORS, KINEMATIC_CHAIN
from .measurements import measurement_segments
from .transforms import quat_to_mat3


def _bone_transform(start, end):
    """Compute 4x4 transform for a unit Z-cylinder to span start→end.

    Returns None for a degenerate (zero-length) segment.
    """
    direction = end - start
    length = np.linalg.norm(direction)
    if length < 1e-10:
        return None

    d = direction / length
    z = np.array([0, 0, 1], dtype=np.float64)
    dot = np.dot(z, d)

    if dot > 0.9999:
        R = np.eye(3)
    elif dot < -0.9999:
        R = quat_to_mat3((1.0, 0.0, 0.0, 0.0))  # 180° around X
    else:
        cross = np.cross(z, d)
        axis = cross / np.linalg.norm(cross)
        half = np.arccos(np.clip(dot, -1, 1)) / 2
        R = quat_to_mat3((*(axis * np.sin(half)), np.cos(half)))

    mat = np.eye(4)
    mat[:3, :3] = R
    mat[:3, 2] *= length
    mat[:3, 3] = (start + end) / 2.0
    return mat


def _add_sphere(scene, pos, radius, color, name):
    sphere = trimesh.creation.icosphere(subdivisions=1, radius=radius)
    sphere.visual.face_colors = color
    transform = np.eye(4)
    transform[:3, 3] = pos
    scene.add_geometry(sphere, node_name=name, geom_name=f"{name}_geom", transform=transform)


def _add_segment(scene, start, end, radius, color, name):
    mat = _bone_transform(np.asarray(start, dtype=np.float64), np.asarray(end, dtype=np.float64))
    if mat is None:
        return False
    cyl = trimesh.creation.cylinder(radius=radius, height=1.0, sections=6)
    cyl.visual.face_colors = color
    scene.add_geometry(cyl, node_name=name, geom_name=f"{name}_geom", transform=mat)
    return True


def build_scene(avatar, keys=(), params=None, sphere_radius=0.012):
    """Skeleton of `avatar` (spheres + cylinders) plus one overlay per measurement key."""
    scene = trimesh.Scene()
    world = avatar.world_matrices()

    for bone, ni in sorted(avatar.humanoid.items(), key=lambda kv: kv[1]):
        _add_sphere(scene, world[ni, :3, 3], sphere_radius, COLORS["joint"], f"joint_{bone}")

    bone_radius = sphere_radius * 0.3
    for chain in KINEMATIC_CHAIN:
        present = [name for name in chain if avatar.bone(name) is not None]
        for parent, child in zip(present[:-1], present[1:]):
            _add_segment(scene, world[avatar.bone(parent), :3, 3], world[avatar.bone(child), :3, 3],
                         bone_radius, COLORS["bone"], f"bone_{parent}_{child}")

    for key in keys:
        for i, (start, end, role) in enumerate(measurement_segments(avatar, key, params)):
            name = f"{key}_{i}"
            if not _add_segment(scene, start, end, sphere_radius * 0.5, COLORS[role], name):
                continue
            _add_sphere(scene, start, sphere_radius * 0.8, COLORS[role], f"{name}_start")
            _add_sphere(scene, end, sphere_radius * 0.8, COLORS[role], f"{name}_end")

    return scene
