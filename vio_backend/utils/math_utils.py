"""
Rotation helpers used by preintegration, triangulation and the engines.
Backed by scipy.spatial.transform.Rotation.
"""

import numpy as np
from scipy.spatial.transform import Rotation


# ============================================================================
# SO3
# ============================================================================

def skew(v: np.ndarray) -> np.ndarray:
    """Hat operator: ``skew(a) @ b == cross(a, b)``."""
    x, y, z = np.asarray(v, dtype=float).flatten()
    return np.array([
        [0.0, -z, y],
        [z, 0.0, -x],
        [-y, x, 0.0]
    ])


def so3_exp(omega: np.ndarray) -> np.ndarray:
    """
    Rotation matrix of a rotation vector.

    Below 1e-12 rad the first-order form ``I + [omega]x`` is returned.
    """
    omega = np.asarray(omega, dtype=float).flatten()
    if np.linalg.norm(omega) < 1e-12:
        return np.eye(3) + skew(omega)
    return Rotation.from_rotvec(omega).as_matrix()


def so3_log(R: np.ndarray) -> np.ndarray:
    """Rotation vector of a rotation matrix; slightly non-orthogonal input is re-projected first."""
    R = np.asarray(R, dtype=float)
    if not is_rotation_matrix(R):
        R = project_to_so3(R)
    return Rotation.from_matrix(R).as_rotvec()


def so3_right_jacobian(omega: np.ndarray) -> np.ndarray:
    """
    Right Jacobian Jr(omega) of SO3.

    ``exp(omega + d) ~= exp(omega) exp(Jr(omega) d)`` for a small ``d``.
    Used for the preintegration noise and bias Jacobians.
    """
    omega = np.asarray(omega, dtype=float).flatten()
    angle = np.linalg.norm(omega)
    W = skew(omega)

    if angle < 1e-5:
        return np.eye(3) - 0.5 * W + W @ W / 6.0

    angle_sq = angle * angle
    return (
        np.eye(3)
        - (1.0 - np.cos(angle)) / angle_sq * W
        + (angle - np.sin(angle)) / (angle_sq * angle) * W @ W
    )


def is_rotation_matrix(R: np.ndarray, tol: float = 1e-6) -> bool:
    """Orthonormal 3x3 with determinant +1, within ``tol``."""
    R = np.asarray(R)
    if R.shape != (3, 3):
        return False
    orthonormal = np.allclose(R @ R.T, np.eye(3), atol=tol)
    return bool(orthonormal and np.isclose(np.linalg.det(R), 1.0, atol=tol))


def project_to_so3(R: np.ndarray) -> np.ndarray:
    """Closest rotation matrix in the Frobenius sense (SVD)."""
    U, _, Vt = np.linalg.svd(np.asarray(R, dtype=float).reshape(3, 3))
    if np.linalg.det(U @ Vt) < 0:
        # Flip the weakest axis to avoid a reflection
        Vt[-1, :] *= -1
    return U @ Vt


def rotation_angle(R: np.ndarray) -> float:
    """Angle of a rotation matrix in radians."""
    return float(np.linalg.norm(so3_log(R)))


# ============================================================================
# Quaternions, stored [w, x, y, z] in the calibration
# ============================================================================

def quaternion_to_rotation_matrix(q: np.ndarray) -> np.ndarray:
    """Rotation matrix of a [w, x, y, z] quaternion. A zero quaternion maps to identity."""
    w, x, y, z = np.asarray(q, dtype=float).flatten()
    if np.linalg.norm([w, x, y, z]) < 1e-10:
        return np.eye(3)
    # scipy normalizes and expects scalar-last
    return Rotation.from_quat([x, y, z, w]).as_matrix()
