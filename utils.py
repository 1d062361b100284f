import math
import sys
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import cv2 as cv
import numpy as np
from numpy.typing import NDArray

from config import Criterion

NDArrayFloat = NDArray[np.floating[Any]]
ImageBGR = NDArray[np.uint8]  # (H, W, 3) as decoded by cv.imread

# N,IMGNAME,IMGID,I,KX,KY,A11,A12,A21,A22,MATCHES,INLIERS,HASPT3D,DESC
CSV_HEADER = "N,IMGNAME,IMGID,I,KX,KY,A11,A12,A21,A22,MATCHES,INLIERS,HASPT3D,DESC"
NUM_COLUMNS = 14


@dataclass
class FeatureRecord:
    num: int
    image_name: str
    index: int  # keypoint index within its image
    keypoint: NDArrayFloat  # (2,) pixel coordinates
    A: NDArrayFloat  # (2, 2) affine frame, A[r, c] = A{r+1}{c+1}
    matches: int
    inlier_matches: int
    has_point3d: bool
    descriptor: str = ""

    def is_linked(self, criterion: Criterion = "has3D") -> bool:
        """Whether the feature belongs to the linked group under the given criterion."""
        if criterion == "has3D":
            return self.has_point3d
        elif criterion == "matches":
            return self.matches > 0
        elif criterion == "inliers":
            return self.inlier_matches > 0
        else:
            raise ValueError(f"Unknown grouping criterion: {criterion}")


def _parse_record(fields: list[str]) -> FeatureRecord:
    fields = [f.strip() for f in fields]
    a11, a12, a21, a22 = (float(f) for f in fields[6:10])
    return FeatureRecord(
        num=int(fields[0]),
        image_name=fields[1],
        index=int(fields[3]),
        keypoint=np.array([float(fields[4]), float(fields[5])]),
        A=np.array([[a11, a12], [a21, a22]]),
        matches=int(fields[10]),
        inlier_matches=int(fields[11]),
        has_point3d=fields[12] == "true",
        descriptor=fields[13],
    )


def read_features(path: Path) -> list[FeatureRecord]:
    """Read the keypoint table written by the feature extraction step.

    Comment lines ('#') and rows that fail to parse (including the header) are skipped.
    Reading stops at the first row with fewer than 14 fields.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Unable to open '{path}'")

    features = []
    with open(path, "rb") as f:
        for raw in f:
            try:
                line = raw.decode("utf-8").rstrip("\r\n")
            except UnicodeDecodeError:
                continue
            if not line or line.startswith("#"):
                continue
            fields = line.split(",")
            if len(fields) < NUM_COLUMNS:
                break  # end of data
            if len(fields) != NUM_COLUMNS:
                continue
            try:
                record = _parse_record(fields)
            except ValueError:
                continue
            if not record.image_name:
                continue
            features.append(record)
    return features


def stride_sample(items: list, max_count: int) -> list:
    """Evenly spaced subset of at most min(max_count, len(items)) items, first item included."""
    if max_count < 1:
        raise ValueError(f"max_count must be >= 1, got {max_count}")
    L = len(items)
    if L == 0:
        return []
    stride = math.ceil(L / min(max_count, L))
    return items[::stride]


def sample_features(
    features: list[FeatureRecord], max_patches: int, criterion: Criterion = "has3D"
) -> tuple[list[FeatureRecord], list[FeatureRecord]]:
    """Split features into (linked, unlinked) groups and stride-sample each group.

    The partition is stable, so features from one image stay contiguous.
    """
    linked = [f for f in features if f.is_linked(criterion)]
    unlinked = [f for f in features if not f.is_linked(criterion)]
    return stride_sample(linked, max_patches), stride_sample(unlinked, max_patches)


@dataclass(frozen=True)
class PatchSpec:
    """Source image crop (integer pixel rectangle) around a single keypoint."""

    image_name: str
    x: int
    y: int
    w: int
    h: int

    def padded_size(self, padding: int) -> tuple[int, int]:
        return self.w + padding, self.h + padding

    def fits_in(self, img_hw: tuple[int, int]) -> bool:
        h, w = img_hw
        return self.x >= 0 and self.y >= 0 and self.x + self.w <= w and self.y + self.h <= h


def ellipse_bbox(keypoint: NDArrayFloat, A: NDArrayFloat, scale: float = 1.5) -> tuple[float, float, float, float]:
    """Axis aligned bounding box (left, top, right, bottom) of the keypoint ellipse.

    The columns u, v of scale * A are the semi-axes of the ellipse; its half extents are
    sqrt(u.x^2 + v.x^2) and sqrt(u.y^2 + v.y^2), i.e. the row norms of scale * A.
    See https://iquilezles.org/articles/ellipses/
    """
    half_w, half_h = np.linalg.norm(scale * np.asarray(A, dtype=np.float64), axis=1)
    kx, ky = keypoint
    return kx - half_w, ky - half_h, kx + half_w, ky + half_h


def feature_to_patch(
    feature: FeatureRecord, bbox_scale: float = 1.5, padding: int = 4, max_side: int = 2000
) -> PatchSpec | None:
    """Crop rectangle for a feature, or None if it is too small, too large or has a negative origin."""
    left, top, right, bottom = ellipse_bbox(feature.keypoint, feature.A, bbox_scale)
    if not np.isfinite([left, top, right, bottom]).all():
        return None
    x0 = math.floor(left)
    y0 = math.floor(top)
    W = math.ceil(right) - x0
    H = math.ceil(bottom) - y0
    if W < 2 or H < 2 or W + padding > max_side or H + padding > max_side or x0 < 0 or y0 < 0:
        return None
    return PatchSpec(feature.image_name, x0, y0, W, H)


def features_to_patches(features: Iterable[FeatureRecord], **kwargs) -> list[PatchSpec]:
    """Patch specs for the features that pass the geometry filter, in input order."""
    patches = []
    for f in features:
        if (patch := feature_to_patch(f, **kwargs)) is not None:
            patches.append(patch)
    return patches


class ImageCache:
    """Bounded LRU cache of decoded source images, keyed by image name.

    With the default capacity of 1 only the most recently loaded image is kept, which is enough
    when patches from the same image are contiguous.
    """

    def __init__(self, img_dir: Path, capacity: int = 1):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._img_dir = Path(img_dir)
        self._capacity = capacity
        self._store: OrderedDict[str, ImageBGR | None] = OrderedDict()
        self.loads = 0  # number of decodes, for diagnostics

    def _load(self, image_name: str) -> ImageBGR | None:
        self.loads += 1
        img = cv.imread(str(self._img_dir / image_name), cv.IMREAD_COLOR)
        if img is None:
            print(f"Unable to read source image '{self._img_dir / image_name}', skipping its patches", file=sys.stderr)
        return img

    def get(self, image_name: str) -> ImageBGR | None:
        """Decoded image, or None if it could not be read."""
        if image_name in self._store:
            self._store.move_to_end(image_name)
            return self._store[image_name]
        img = self._load(image_name)
        self._store[image_name] = img
        if len(self._store) > self._capacity:
            self._store.popitem(last=False)
        return img

    @property
    def size(self) -> int:
        return len(self._store)
