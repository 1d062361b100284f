from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path

import cv2 as cv
import numpy as np
import typer

from config import PatchConfig
from packing import Packing, PackedRect, pack_rectangles
from utils import (
    FeatureRecord,
    ImageBGR,
    ImageCache,
    PatchSpec,
    features_to_patches,
    read_features,
    sample_features,
)

app = typer.Typer()


@dataclass
class MosaicResult:
    canvas: ImageBGR
    num_patches: int  # patches submitted to the packer
    num_drawn: int
    num_unpacked: int
    num_outside: int  # crops outside their source image (or image unreadable)


def _size_index(packing: Packing) -> dict[tuple[int, int], list[PackedRect]]:
    """Multi-map (padded w, padded h) -> packed rectangles, in packing order."""
    size_to_rects: dict[tuple[int, int], list[PackedRect]] = defaultdict(list)
    for rect in packing.rects:
        size_to_rects[(rect.w, rect.h)].append(rect)
    return size_to_rects


def _take_rect(candidates: list[PackedRect], index: int) -> PackedRect:
    """Consume the packed rectangle for patch `index`.

    The packer keeps input indices, so the patch's own rectangle is preferred. Otherwise any
    rectangle of the same padded size is taken: equally sized patches are interchangeable.
    """
    for k, rect in enumerate(candidates):
        if rect.index == index:
            return candidates.pop(k)
    return candidates.pop(0)


def compose_patches(
    patches: list[PatchSpec], packing: Packing, images: ImageCache, padding: int = 4
) -> MosaicResult:
    """Copy every packed patch from its source image into a black canvas of the packing's size."""
    canvas = np.zeros((max(1, packing.height), max(1, packing.width), 3), dtype=np.uint8)
    size_to_rects = _size_index(packing)
    unpacked = set(packing.unpacked)
    num_drawn, num_outside = 0, 0

    for i, patch in enumerate(patches):
        if i in unpacked:
            continue
        img = images.get(patch.image_name)
        if img is None or not patch.fits_in(img.shape[:2]):
            num_outside += 1
            continue
        candidates = size_to_rects.get(patch.padded_size(padding))
        if not candidates:
            raise RuntimeError(
                f"No packed rectangle left for patch {i} ({patch.image_name} {patch.w}x{patch.h}); "
                "packer output does not match the patch list"
            )
        rect = _take_rect(candidates, i)
        # padding stays on the right/bottom of the packed rectangle
        canvas[rect.y : rect.y + rect.h - padding, rect.x : rect.x + rect.w - padding] = img[
            patch.y : patch.y + patch.h, patch.x : patch.x + patch.w
        ]
        num_drawn += 1

    return MosaicResult(canvas, len(patches), num_drawn, packing.num_unpacked, num_outside)


def make_patch_mosaic(features: list[FeatureRecord], img_dir: Path, cfg: PatchConfig) -> MosaicResult:
    """Geometry -> packing -> compositing for one sampled group of features."""
    patches = features_to_patches(features, bbox_scale=cfg.bbox_scale, padding=cfg.padding, max_side=cfg.max_side)
    print(f"{len(patches)} of {len(features)} sampled features give usable patches")

    packing = pack_rectangles(
        [p.padded_size(cfg.padding) for p in patches], max_side=cfg.max_side, discard_step=cfg.discard_step
    )
    print(f"Packed {len(packing.rects)} patches into {packing.width} x {packing.height}")

    # one cache per group keeps the groups independent
    images = ImageCache(img_dir, capacity=cfg.image_cache_size)
    return compose_patches(patches, packing, images, padding=cfg.padding)


def write_image(path: Path, img: ImageBGR) -> None:
    try:
        ok = cv.imwrite(str(path), img)
    except cv.error as e:
        raise OSError(f"Unable to write '{path}': {e}") from e
    if not ok:
        raise OSError(f"Unable to write '{path}'")


def output_paths(output_base: str, cfg: PatchConfig) -> tuple[Path, Path]:
    """Output image paths for the (linked, unlinked) groups."""
    return (
        Path(f"{output_base}-{cfg.criterion}.{cfg.ext}"),
        Path(f"{output_base}-no-{cfg.criterion}.{cfg.ext}"),
    )


def run_pipeline(features_csv: Path, img_dir: Path, output_base: str, cfg: PatchConfig) -> list[MosaicResult]:
    """Read, sample and render both groups; returns the (linked, unlinked) results."""
    features = read_features(features_csv)
    print(f"Read {len(features)} features from {features_csv}")

    linked, unlinked = sample_features(features, cfg.max_patches, cfg.criterion)
    print(f"Sampled {len(linked)} '{cfg.criterion}' and {len(unlinked)} 'no-{cfg.criterion}' features")

    results = []
    for group, out_path in zip((linked, unlinked), output_paths(output_base, cfg)):
        result = make_patch_mosaic(group, img_dir, cfg)
        if result.num_unpacked > 0:
            typer.echo(f"warning: {result.num_unpacked} failures!", err=True)
        if result.num_drawn == 0:
            typer.echo(f"warning: no patches drawn for {out_path}", err=True)
        write_image(out_path, result.canvas)
        print(f"Wrote {result.num_drawn} patches to {out_path}")
        results.append(result)
    return results


@app.command()
def main(
    features_csv: Path = typer.Argument(..., help="Feature table (N,IMGNAME,IMGID,I,KX,KY,A11,...,DESC)"),
    img_dir: Path = typer.Argument(..., help="Folder with the source images"),
    max_patches: int = typer.Argument(..., help="Maximum number of patches per output image (> 10)"),
    output_base: str = typer.Argument(..., help="Output path prefix"),
    criterion: str = typer.Option(
        "has3D",
        "--criterion",
        "-c",
        help="Grouping criterion: 'has3D', 'matches' or 'inliers'",
    ),
    ext: str = typer.Option("png", "--ext", "-e", help="Output image format"),
    padding: int = typer.Option(4, "--padding", "-p", help="Gap between packed patches", min=0),
    max_side: int = typer.Option(2000, "--max-side", "-s", help="Maximum side of an output image", min=1),
    bbox_scale: float = typer.Option(1.5, "--bbox-scale", help="Keypoint ellipse enlargement factor"),
    cache_size: int = typer.Option(1, "--cache-size", help="Number of decoded source images kept in memory", min=1),
):
    """Render mosaics of keypoint patches with and without a reconstructed 3D point."""

    # Validate inputs
    if max_patches <= 10:
        typer.echo(f"Error: max-patches must be greater than 10, got {max_patches}", err=True)
        raise typer.Exit(code=1)

    if criterion not in ["has3D", "matches", "inliers"]:
        typer.echo(f"Error: criterion must be 'has3D', 'matches' or 'inliers', got '{criterion}'", err=True)
        raise typer.Exit(code=1)

    if not img_dir.is_dir():
        typer.echo(f"Error: image folder '{img_dir}' does not exist", err=True)
        raise typer.Exit(code=1)

    cfg = PatchConfig(
        max_patches=max_patches,
        criterion=criterion,  # type: ignore
        bbox_scale=bbox_scale,
        padding=padding,
        max_side=max_side,
        ext=ext.lstrip("."),
        image_cache_size=cache_size,
    )

    try:
        run_pipeline(features_csv, img_dir, output_base, cfg)
    except (FileNotFoundError, OSError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo("Done!")


if __name__ == "__main__":
    app()
