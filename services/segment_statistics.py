"""
Statistiques par segment (nombre de voxels, volume physique) et table
récapitulative des segments sous forme de DataFrame.
"""

import logging
from typing import Dict, Optional

import numpy as np
import pandas as pd

from models.segmentation_model import Segmentation
from models.volume_model import Volume

SEGMENT_TABLE_COLUMNS = [
    "segment_index",
    "label",
    "color_r",
    "color_g",
    "color_b",
    "opacity",
    "is_visible",
    "is_locked",
    "is_active",
    "voxel_count",
    "volume_mm3",
]


def voxel_count_key(segment_index: int) -> str:
    return f"segment_{segment_index}_voxels"


def volume_key(segment_index: int) -> str:
    return f"segment_{segment_index}_volume_mm3"


class SegmentStatisticsService:
    """Calcule les statistiques des segments à partir du buffer labelmap."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def compute(self, segmentation: Segmentation, volume: Optional[Volume]) -> Dict[str, float]:
        """
        Compte les voxels de chaque segment connu et en déduit le volume.

        Args:
            segmentation: Segmentation dont les segments sont comptés
            volume: Volume labelmap associé (None : tous les comptes à 0)

        Returns:
            Dictionnaire plat destiné à cached_stats
        """
        indices = segmentation.sorted_segment_indices()
        stats: Dict[str, float] = {}

        if volume is None or volume.scalar_data.size == 0:
            counts = np.zeros(1, dtype=np.int64)
            voxel_volume = 0.0
        else:
            labels = np.asarray(volume.scalar_data).astype(np.int64, copy=False).reshape(-1)
            counts = np.bincount(labels[labels > 0])
            voxel_volume = float(np.prod(np.asarray(volume.spacing, dtype=np.float64)))

        total = 0
        for index in indices:
            count = int(counts[index]) if index < counts.size else 0
            stats[voxel_count_key(index)] = float(count)
            stats[volume_key(index)] = count * voxel_volume
            total += count
        stats["total_voxels"] = float(total)

        self.logger.debug(
            "Statistics computed for %s: %d segment(s), %d labeled voxel(s)",
            segmentation.id,
            len(indices),
            total,
        )
        return stats

    def build_segment_table(self, segmentation: Segmentation) -> pd.DataFrame:
        """Une ligne par segment, triée par index ; les statistiques manquantes valent NaN."""
        rows = []
        for index in segmentation.sorted_segment_indices():
            segment = segmentation.segments[index]
            rows.append(
                {
                    "segment_index": index,
                    "label": segment.label,
                    "color_r": segment.color[0],
                    "color_g": segment.color[1],
                    "color_b": segment.color[2],
                    "opacity": segment.opacity,
                    "is_visible": segment.is_visible,
                    "is_locked": segment.is_locked,
                    "is_active": segmentation.active_segment_index == index,
                    "voxel_count": segmentation.cached_stats.get(voxel_count_key(index), np.nan),
                    "volume_mm3": segmentation.cached_stats.get(volume_key(index), np.nan),
                }
            )
        table = pd.DataFrame(rows, columns=SEGMENT_TABLE_COLUMNS)
        return table.set_index("segment_index", drop=False)
