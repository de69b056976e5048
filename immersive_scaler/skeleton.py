"""Mutable transform tree of an avatar: local TRS per node, FK, skinning, snapshots.

Nothing derived is cached across edits. World matrices, skinned vertices and the view point
are recomputed from the local TRS arrays on every call, so a measurement taken
after any edit always sees the edit. Inside `fixed_pose()` skinned vertices
are reused for as long as the world matrices stay identical.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .exceptions import NotHumanoidError
from .glb_parser import GLBData, parse_glb
from .transforms import trs_to_mat4


@dataclass
class TransformSnapshot:
    translations: np.ndarray
    rotations: np.ndarray
    scales: np.ndarray
    view_offset: Optional[np.ndarray]
    inverse_bind_matrices: list


def _build_topo_order(parent_indices: list) -> list:
    """Topological order (parents before children)."""
    n = len(parent_indices)
    visited = set()
    order = []

    def _visit(si):
        # Iterative walk up to the first visited ancestor
        chain = []
        while si >= 0 and si not in visited:
            chain.append(si)
            si = parent_indices[si]
        for ni in reversed(chain):
            visited.add(ni)
            order.append(ni)

    for si in range(n):
        _visit(si)
    return order


class Avatar:
    """A humanoid avatar whose bones can be measured and rescaled in place."""

    def __init__(self, glb_data: GLBData):
        if "hips" not in glb_data.humanoid:
            raise NotHumanoidError("Avatar has no humanoid mapping (no hips bone found)")

        self.glb = glb_data
        self.node_names = list(glb_data.node_names)
        self.parent_indices = list(glb_data.parent_indices)
        self.humanoid = dict(glb_data.humanoid)

        trs = glb_data.rest_local_trs
        n = len(trs)
        self.translations = np.array([t for t, _, _ in trs], dtype=np.float64).reshape(n, 3)
        self.rotations = np.array([r for _, r, _ in trs], dtype=np.float64).reshape(n, 4)
        self.scales = np.array([s for _, _, s in trs], dtype=np.float64).reshape(n, 3)

        self.view_bone = glb_data.view_bone
        self.view_offset = (np.array(glb_data.view_offset, dtype=np.float64)
                            if glb_data.view_offset is not None else None)

        self.inverse_bind_matrices = [s.inverse_bind_matrices.copy() for s in glb_data.skins]

        self.topo_order = _build_topo_order(self.parent_indices)
        self.children_map = {}
        for ni, pi in enumerate(self.parent_indices):
            if pi >= 0:
                self.children_map.setdefault(pi, []).append(ni)
        self._skin_cache = None

    @classmethod
    def load(cls, path: str) -> "Avatar":
        return cls(parse_glb(path))

    def __len__(self):
        return len(self.node_names)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def bone(self, name: str) -> Optional[int]:
        """Node index of a humanoid bone, or None when the rig lacks it."""
        return self.humanoid.get(name)

    @property
    def avatar_root(self) -> int:
        """Top-most ancestor of the hips: the node that carries the avatar scale."""
        ni = self.humanoid["hips"]
        while self.parent_indices[ni] >= 0:
            ni = self.parent_indices[ni]
        return ni

    def descendants(self, ni: int) -> list:
        out = []
        stack = [ni]
        while stack:
            cur = stack.pop()
            out.append(cur)
            stack.extend(self.children_map.get(cur, []))
        return out

    def skeleton_nodes(self) -> list:
        """Skin joints and humanoid bones, the nodes a bone-based floor looks at."""
        nodes = set(self.humanoid.values())
        for skin in self.glb.skins:
            nodes.update(skin.joints)
        return sorted(nodes)

    # ------------------------------------------------------------------
    # Forward kinematics
    # ------------------------------------------------------------------

    def local_matrix(self, ni: int) -> np.ndarray:
        return trs_to_mat4(self.translations[ni], self.rotations[ni], self.scales[ni])

    def world_matrices(self) -> np.ndarray:
        """(N, 4, 4) world matrices from the current local TRS (top-down walk)."""
        world = np.zeros((len(self.node_names), 4, 4), dtype=np.float64)
        for ni in self.topo_order:
            local_mat = self.local_matrix(ni)
            pi = self.parent_indices[ni]
            if pi < 0:
                world[ni] = local_mat
            else:
                world[ni] = world[pi] @ local_mat
        return world

    def world_position(self, ni: int, world: Optional[np.ndarray] = None) -> np.ndarray:
        if world is None:
            world = self.world_matrices()
        return world[ni, :3, 3].copy()

    def bone_position(self, name: str, world: Optional[np.ndarray] = None) -> Optional[np.ndarray]:
        ni = self.bone(name)
        if ni is None:
            return None
        return self.world_position(ni, world)

    def set_world_position(self, ni: int, position) -> None:
        """Move a node so its world origin lands on `position` (children follow)."""
        pi = self.parent_indices[ni]
        position = np.asarray(position, dtype=np.float64)
        if pi < 0:
            self.translations[ni] = position
            return
        parent_world = self.world_matrices()[pi]
        local = np.linalg.inv(parent_world) @ np.append(position, 1.0)
        self.translations[ni] = local[:3]

    # ------------------------------------------------------------------
    # Per-axis scale
    # ------------------------------------------------------------------

    def effective_scale(self, ni: int, world: Optional[np.ndarray] = None) -> np.ndarray:
        """World-space length of each of the node's local axes."""
        if world is None:
            world = self.world_matrices()
        return np.linalg.norm(world[ni, :3, :3], axis=0)

    def set_effective_scale(self, ni: int, desired) -> None:
        """Set the local scale so the node's effective scale becomes `desired`.

        Each world column norm is linear in the matching local scale
        component, so one update is exact.
        """
        current = self.effective_scale(ni)
        desired = np.asarray(desired, dtype=np.float64)
        safe = np.where(current > 1e-12, current, 1.0)
        self.scales[ni] = self.scales[ni] * desired / safe

    def length_axis(self, ni: int, child: int, world: Optional[np.ndarray] = None) -> int:
        """Local axis of `ni` that points most directly at `child`."""
        if world is None:
            world = self.world_matrices()
        if self.parent_indices[child] == ni:
            offset = self.translations[child]
        else:
            offset = (np.linalg.inv(world[ni]) @ np.append(world[child, :3, 3], 1.0))[:3]
        return int(np.argmax(np.abs(offset)))

    def axis_factors(self, ni: int, child: int, length: float, cross: float) -> np.ndarray:
        """Per-axis factors: `length` on the bone axis, `cross` on the other two."""
        factors = np.full(3, cross, dtype=np.float64)
        factors[self.length_axis(ni, child)] = length
        return factors

    # ------------------------------------------------------------------
    # Skinning / view point
    # ------------------------------------------------------------------

    def skinned_vertices(self, world: Optional[np.ndarray] = None) -> np.ndarray:
        """(V, 3) world positions of every mesh vertex in the current pose."""
        if world is None:
            world = self.world_matrices()
        if self._skin_cache is not None:
            key = world.tobytes()
            if key not in self._skin_cache:
                self._skin_cache.clear()
                verts = self._skin(world)
                verts.setflags(write=False)
                self._skin_cache[key] = verts
            return self._skin_cache[key]
        return self._skin(world)

    @contextmanager
    def fixed_pose(self):
        """Skin the mesh at most once per pose while the block runs.

        Inverse bind matrices must not change inside the block.
        """
        outer = self._skin_cache
        if outer is None:
            self._skin_cache = {}
        try:
            yield self
        finally:
            if outer is None:
                self._skin_cache = None

    def _skin(self, world: np.ndarray) -> np.ndarray:
        out = []
        for prim in self.glb.primitives:
            pos4 = np.hstack([prim.positions, np.ones((len(prim.positions), 1))])
            node_pos = pos4 @ world[prim.node].T
            if prim.skin is None:
                out.append(node_pos[:, :3])
                continue

            skin = self.glb.skins[prim.skin]
            joint_mats = world[skin.joints] @ self.inverse_bind_matrices[prim.skin]  # (J, 4, 4)
            joints = np.clip(prim.joints, 0, len(skin.joints) - 1)
            weights = prim.weights
            sums = weights.sum(axis=1, keepdims=True)
            weights = weights / np.where(sums > 0, sums, 1.0)

            # One influence at a time keeps the temporaries at (V, 4, 4)
            skinned = np.zeros((len(pos4), 3), dtype=np.float64)
            for k in range(joints.shape[1]):
                moved = np.einsum("vij,vj->vi", joint_mats[joints[:, k]], pos4)[:, :3]
                skinned += weights[:, k:k + 1] * moved
            # Unweighted vertices follow the mesh node
            unweighted = sums[:, 0] <= 0
            skinned[unweighted] = node_pos[unweighted, :3]
            out.append(skinned)

        if not out:
            return np.zeros((0, 3), dtype=np.float64)
        return np.concatenate(out, axis=0)

    def view_position(self, world: Optional[np.ndarray] = None) -> Optional[np.ndarray]:
        """World position of the avatar's view point, if the file defines one."""
        if self.view_offset is None or self.view_bone is None:
            return None
        return self.world_position(self.view_bone, world) + self.view_offset

    def rebind(self, ni: int, old_world: np.ndarray) -> None:
        """Update inverse bind matrices so a moved joint leaves its skin in place."""
        new_world = self.world_matrices()[ni]
        correction = np.linalg.inv(new_world) @ old_world
        for si, skin in enumerate(self.glb.skins):
            for k, joint in enumerate(skin.joints):
                if joint == ni:
                    self.inverse_bind_matrices[si][k] = correction @ self.inverse_bind_matrices[si][k]

    # ------------------------------------------------------------------
    # Preview support
    # ------------------------------------------------------------------

    def snapshot(self) -> TransformSnapshot:
        return TransformSnapshot(
            translations=self.translations.copy(),
            rotations=self.rotations.copy(),
            scales=self.scales.copy(),
            view_offset=None if self.view_offset is None else self.view_offset.copy(),
            inverse_bind_matrices=[m.copy() for m in self.inverse_bind_matrices],
        )

    def restore(self, snap: TransformSnapshot) -> None:
        self.translations = snap.translations.copy()
        self.rotations = snap.rotations.copy()
        self.scales = snap.scales.copy()
        self.view_offset = None if snap.view_offset is None else snap.view_offset.copy()
        self.inverse_bind_matrices = [m.copy() for m in snap.inverse_bind_matrices]
