from pathlib import Path

import cv2 as cv
import numpy as np
import pytest

from utils import CSV_HEADER


def feature_row(
    n: int,
    image: str = "IMG_0001.JPG",
    kx: float = 100.0,
    ky: float = 100.0,
    A: tuple[float, float, float, float] = (10.0, 0.0, 0.0, 10.0),
    matches: int = 1,
    inliers: int = 1,
    has3d: bool = True,
    index: int | None = None,
) -> str:
    a11, a12, a21, a22 = A
    return (
        f"{n},{image},1,{n if index is None else index},{kx:.2f},{ky:.2f},"
        f"{a11:.6f},{a12:.6f},{a21:.6f},{a22:.6f},{matches},{inliers},{str(has3d).lower()},00ff10"
    )


@pytest.fixture
def write_table(tmp_path):
    def _write(rows: list[str], name: str = "features.csv", header: bool = True) -> Path:
        path = tmp_path / name
        lines = ([CSV_HEADER] if header else []) + rows
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    return _write


@pytest.fixture
def image_dir(tmp_path):
    """Two 200x200 source images with a distinct, position dependent pattern."""
    img_dir = tmp_path / "images"
    img_dir.mkdir()
    yy, xx = np.mgrid[0:200, 0:200]
    for k, name in enumerate(["IMG_0001.JPG", "IMG_0002.JPG"]):
        img = np.stack([xx % 256, yy % 256, np.full_like(xx, 100 * (k + 1))], axis=-1).astype(np.uint8)
        # PNG payload keeps pixels exact regardless of the file name
        ok, buf = cv.imencode(".png", img)
        assert ok
        (img_dir / name).write_bytes(buf.tobytes())
    return img_dir
