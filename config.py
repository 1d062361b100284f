"""Configuration for the feature patch mosaic pipeline."""

from dataclasses import dataclass
from typing import Literal

Criterion = Literal["has3D", "matches", "inliers"]


@dataclass
class PatchConfig:
    """Configuration for the feature patch mosaic pipeline.

    Modify the default values here for experimentation.
    Command-line overrides: see `patches.py --help`
    """

    # Sampling
    max_patches: int = 500
    """Maximum number of patches drawn from each group"""

    criterion: Criterion = "has3D"
    """Grouping criterion: 'has3D' (has 3D point), 'matches' or 'inliers' (count > 0)"""

    # Patch geometry
    bbox_scale: float = 1.5
    """Enlargement factor applied to the keypoint ellipse before taking its bounding box"""

    # Packing
    padding: int = 4
    """Margin added to the width and height of every packed rectangle"""

    max_side: int = 2000
    """Maximum side of the output canvas"""

    discard_step: int = -4
    """Bin search step; values <= 0 use step 1 with -discard_step extra tries"""

    # Output
    ext: str = "png"
    """Extension (and thus format) of the output images"""

    image_cache_size: int = 1
    """Number of decoded source images kept in memory (1 = most recent only)"""
