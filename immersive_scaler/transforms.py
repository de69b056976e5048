"""Pure-numpy TRS / matrix / quaternion helpers (quaternions are xyzw, glTF order)."""

import numpy as np


def _normalize(v: np.ndarray) -> np.ndarray:
    """Normalize vectors along last axis, handling zero-length."""
    norms = np.sqrt((v ** 2).sum(axis=-1, keepdims=True))
    norms = np.maximum(norms, 1e-10)
    return v / norms


def trs_to_mat4(t, r_xyzw, s) -> np.ndarray:
    """Build a 4x4 matrix from translation, rotation (xyzw), scale."""
    x, y, z, w = r_xyzw
    m = np.eye(4, dtype=np.float64)
    # Rotation from quaternion
    m[0, 0] = (1 - 2 * (y * y + z * z)) * s[0]
    m[0, 1] = (2 * (x * y - z * w)) * s[1]
    m[0, 2] = (2 * (x * z + y * w)) * s[2]
    m[1, 0] = (2 * (x * y + z * w)) * s[0]
    m[1, 1] = (1 - 2 * (x * x + z * z)) * s[1]
    m[1, 2] = (2 * (y * z - x * w)) * s[2]
    m[2, 0] = (2 * (x * z - y * w)) * s[0]
    m[2, 1] = (2 * (y * z + x * w)) * s[1]
    m[2, 2] = (1 - 2 * (x * x + y * y)) * s[2]
    m[0, 3] = t[0]
    m[1, 3] = t[1]
    m[2, 3] = t[2]
    return m


def quat_to_mat3(r_xyzw) -> np.ndarray:
    return trs_to_mat4((0.0, 0.0, 0.0), r_xyzw, (1.0, 1.0, 1.0))[:3, :3]


def mat3_to_quat_xyzw(m: np.ndarray) -> list:
    """Convert 3x3 rotation matrix to quaternion [x, y, z, w]."""
    trace = m[0, 0] + m[1, 1] + m[2, 2]
    if trace > 0:
        s = 0.5 / np.sqrt(trace + 1.0)
        w = 0.25 / s
        x = (m[2, 1] - m[1, 2]) * s
        y = (m[0, 2] - m[2, 0]) * s
        z = (m[1, 0] - m[0, 1]) * s
    elif m[0, 0] > m[1, 1] and m[0, 0] > m[2, 2]:
        s = 2.0 * np.sqrt(1.0 + m[0, 0] - m[1, 1] - m[2, 2])
        w = (m[2, 1] - m[1, 2]) / s
        x = 0.25 * s
        y = (m[0, 1] + m[1, 0]) / s
        z = (m[0, 2] + m[2, 0]) / s
    elif m[1, 1] > m[2, 2]:
        s = 2.0 * np.sqrt(1.0 + m[1, 1] - m[0, 0] - m[2, 2])
        w = (m[0, 2] - m[2, 0]) / s
        x = (m[0, 1] + m[1, 0]) / s
        y = 0.25 * s
        z = (m[1, 2] + m[2, 1]) / s
    else:
        s = 2.0 * np.sqrt(1.0 + m[2, 2] - m[0, 0] - m[1, 1])
        w = (m[1, 0] - m[0, 1]) / s
        x = (m[0, 2] + m[2, 0]) / s
        y = (m[1, 2] + m[2, 1]) / s
        z = 0.25 * s
    return [float(x), float(y), float(z), float(w)]


def decompose_matrix(matrix_col_major):
    """Decompose a column-major flat 16-element matrix into glTF TRS."""
    m = np.array(matrix_col_major, dtype=np.float64).reshape(4, 4, order="F")
    t = m[:3, 3].tolist()

    sx = np.linalg.norm(m[:3, 0])
    sy = np.linalg.norm(m[:3, 1])
    sz = np.linalg.norm(m[:3, 2])
    s = [float(sx), float(sy), float(sz)]

    R = np.column_stack([
        m[:3, 0] / max(sx, 1e-10),
        m[:3, 1] / max(sy, 1e-10),
        m[:3, 2] / max(sz, 1e-10),
    ])
    if np.linalg.det(R) < 0:
        R[:, 0] *= -1
        s[0] *= -1

    return t, mat3_to_quat_xyzw(R), s


def qmul(q: np.ndarray, r: np.ndarray) -> np.ndarray:
    """Multiply quaternions q * r.  Shape (..., 4), xyzw convention."""
    x0, y0, z0, w0 = q[..., 0], q[..., 1], q[..., 2], q[..., 3]
    x1, y1, z1, w1 = r[..., 0], r[..., 1], r[..., 2], r[..., 3]
    return np.stack([
        w0*x1 + x0*w1 + y0*z1 - z0*y1,
        w0*y1 - x0*z1 + y0*w1 + z0*x1,
        w0*z1 + x0*y1 - y0*x1 + z0*w1,
        w0*w1 - x0*x1 - y0*y1 - z0*z1,
    ], axis=-1)


def quat_from_axis_angle(axis, angle: float) -> np.ndarray:
    """Unit quaternion (xyzw) rotating by `angle` radians around `axis`."""
    axis = _normalize(np.asarray(axis, dtype=np.float64))
    half = angle / 2.0
    return np.concatenate([axis * np.sin(half), [np.cos(half)]])


def signed_angle(v0: np.ndarray, v1: np.ndarray, axis: np.ndarray) -> float:
    """Angle from v0 to v1 around axis, both projected onto the axis plane."""
    axis = _normalize(axis)
    p0 = v0 - np.dot(v0, axis) * axis
    p1 = v1 - np.dot(v1, axis) * axis
    if np.linalg.norm(p0) < 1e-10 or np.linalg.norm(p1) < 1e-10:
        return 0.0
    return float(np.arctan2(np.dot(np.cross(p0, p1), axis), np.dot(p0, p1)))
