"""
Fonctions utilitaires pour la géométrie et la validation des couleurs.
"""
from typing import Sequence, Tuple

import numpy as np


def euclidean_distance(p1: Sequence[float], p2: Sequence[float]) -> float:
    """
    Distance euclidienne entre deux points 3D.

    Args:
        p1: Premier point (x, y, z)
        p2: Second point (x, y, z)

    Returns:
        Distance entre les deux points
    """
    a = np.asarray(p1, dtype=np.float64)
    b = np.asarray(p2, dtype=np.float64)
    return float(np.sqrt(np.sum((a - b) ** 2)))


def normalize_color(color: Sequence[float]) -> Tuple[float, float, float]:
    """
    Valide une couleur à 3 canaux et la convertit en tuple.

    Raises:
        ValueError: si la couleur n'a pas exactement 3 canaux
    """
    channels = tuple(color)
    if len(channels) != 3:
        raise ValueError(f"Color must have 3 channels, got {len(channels)}: {list(channels)}")
    return channels  # type: ignore[return-value]


def validate_opacity(opacity: float) -> float:
    """Vérifie que l'opacité est dans [0, 1]."""
    value = float(opacity)
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"Opacity must be in [0, 1], got {opacity}")
    return value
