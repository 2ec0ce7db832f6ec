"""
CartoLab Analysis: Procrustes alignment of antigenic maps.

Finds the rotation (reflections allowed), translation and optional uniform
scaling that bring one coordinate set onto another with the least squared
error, from the SVD of the cross-covariance matrix of the centred sets.

Points with NaN coordinates in either set take no part in the fit and get
NaN residuals.
"""

from dataclasses import dataclass
from typing import Any, Dict

import numpy as np

from cartolab.errors import DimensionMismatch


@dataclass
class Procrustes:
    """
    A similarity transform ``scale * coords @ rotation + translation``.

    Attributes:
        rotation: (D, D) orthogonal matrix.
        translation: (D,) vector.
        scale: Uniform scale factor (1 without scaling).
    """
    rotation: np.ndarray
    translation: np.ndarray
    scale: float = 1.0

    def apply(self, coords: np.ndarray) -> np.ndarray:
        return self.scale * np.asarray(coords, dtype=float) @ self.rotation + self.translation

    def to_dict(self) -> Dict[str, Any]:
        return {
            "R": self.rotation.tolist(),
            "tt": self.translation.tolist(),
            "s": self.scale,
        }


@dataclass
class ProcrustesData:
    """
    Residuals of a Procrustes alignment.

    Attributes:
        ag_dists: Distance between each aligned antigen and its target.
        sr_dists: Distance between each aligned serum and its target.
        ag_rmsd: Root mean squared antigen distance.
        sr_rmsd: Root mean squared serum distance.
        total_rmsd: Root mean squared distance over all points.
        transform: The fitted transform.
    """
    ag_dists: np.ndarray
    sr_dists: np.ndarray
    ag_rmsd: float
    sr_rmsd: float
    total_rmsd: float
    transform: Procrustes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ag_dists": self.ag_dists.tolist(),
            "sr_dists": self.sr_dists.tolist(),
            "ag_rmsd": self.ag_rmsd,
            "sr_rmsd": self.sr_rmsd,
            "total_rmsd": self.total_rmsd,
        }


def _check_pair(source: np.ndarray, target: np.ndarray):
    if source.ndim != 2 or target.ndim != 2:
        raise DimensionMismatch("Procrustes coordinates must be 2D arrays")
    if source.shape[0] != target.shape[0]:
        raise DimensionMismatch(
            f"Cannot align {source.shape[0]} points onto {target.shape[0]} points"
        )
    if source.shape[1] != target.shape[1]:
        raise DimensionMismatch(
            f"Cannot align {source.shape[1]}D coordinates onto "
            f"{target.shape[1]}D coordinates"
        )


def procrustes(
    source: np.ndarray,
    target: np.ndarray,
    scaling: bool = False,
    translation: bool = True,
) -> Procrustes:
    """
    Fit the transform taking ``source`` onto ``target``.

    Args:
        source: (n, D) coordinates to move.
        target: (n, D) reference coordinates, row-matched with source.
        scaling: Also fit a uniform scale factor.
        translation: Also fit a translation.

    Returns:
        Procrustes transform.

    Raises:
        DimensionMismatch: If point counts or dimensions differ.
        ValueError: If no point has finite coordinates in both sets.
    """
    source = np.asarray(source, dtype=float)
    target = np.asarray(target, dtype=float)
    _check_pair(source, target)

    valid = np.all(np.isfinite(source), axis=1) & np.all(np.isfinite(target), axis=1)
    if not np.any(valid):
        raise ValueError("No points with finite coordinates in both sets to align")
    x = source[valid]
    y = target[valid]

    d = source.shape[1]
    x_mean = x.mean(axis=0) if translation else np.zeros(d)
    y_mean = y.mean(axis=0) if translation else np.zeros(d)
    xc = x - x_mean
    yc = y - y_mean

    u, s, vt = np.linalg.svd(xc.T @ yc)
    rotation = u @ vt

    scale = 1.0
    if scaling:
        ss = float(np.sum(xc ** 2))
        if ss > 0:
            scale = float(np.sum(s) / ss)

    return Procrustes(
        rotation=rotation,
        translation=y_mean - scale * x_mean @ rotation,
        scale=scale,
    )


def _rmsd(dists: np.ndarray) -> float:
    dists = dists[np.isfinite(dists)]
    if dists.size == 0:
        return float("nan")
    return float(np.sqrt(np.mean(dists ** 2)))


def procrustes_data(
    source_ag: np.ndarray,
    source_sr: np.ndarray,
    target_ag: np.ndarray,
    target_sr: np.ndarray,
    scaling: bool = False,
    translation: bool = True,
) -> ProcrustesData:
    """
    Align a map's antigens and sera jointly onto another map and report
    per-point residual distances and RMSDs.
    """
    source_ag = np.asarray(source_ag, dtype=float)
    source_sr = np.asarray(source_sr, dtype=float)
    target_ag = np.asarray(target_ag, dtype=float)
    target_sr = np.asarray(target_sr, dtype=float)
    _check_pair(source_ag, target_ag)
    _check_pair(source_sr, target_sr)

    source = np.vstack([source_ag, source_sr])
    target = np.vstack([target_ag, target_sr])
    transform = procrustes(source, target, scaling=scaling, translation=translation)

    dists = np.sqrt(np.sum((transform.apply(source) - target) ** 2, axis=1))
    n_ag = source_ag.shape[0]
    ag_dists = dists[:n_ag]
    sr_dists = dists[n_ag:]

    return ProcrustesData(
        ag_dists=ag_dists,
        sr_dists=sr_dists,
        ag_rmsd=_rmsd(ag_dists),
        sr_rmsd=_rmsd(sr_dists),
        total_rmsd=_rmsd(dists),
        transform=transform,
    )


def procrustes_records(source, target, scaling: bool = False) -> ProcrustesData:
    """Procrustes of one OptimizationRecord's base coordinates onto another's."""
    return procrustes_data(
        source.ag_coords,
        source.sr_coords,
        target.ag_coords,
        target.sr_coords,
        scaling=scaling,
    )
