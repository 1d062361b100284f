from pathlib import Path

import pandas as pd
import tyro

from utils import FeatureRecord, read_features


def features_to_frame(features: list[FeatureRecord]) -> pd.DataFrame:
    """One row per feature; the descriptor and affine frame are left out."""
    return pd.DataFrame(
        {
            "num": [f.num for f in features],
            "image": [f.image_name for f in features],
            "index": [f.index for f in features],
            "kx": [float(f.keypoint[0]) for f in features],
            "ky": [float(f.keypoint[1]) for f in features],
            "matches": [f.matches for f in features],
            "inliers": [f.inlier_matches for f in features],
            "has3D": [f.has_point3d for f in features],
        }
    )


def feature_counts(df: pd.DataFrame, by_image: bool = False) -> pd.DataFrame:
    """Counts of features, features with matches, with inlier matches and with a 3D point."""
    flags = pd.DataFrame(
        {
            "image": df["image"],
            "features": 1,
            "with_matches": (df["matches"] > 0).astype(int),
            "with_inliers": (df["inliers"] > 0).astype(int),
            "with_3D": df["has3D"].astype(int),
        }
    )
    if by_image:
        return flags.groupby("image", sort=False).sum()
    return flags.drop(columns="image").sum().to_frame("count")


def summarize_features(features_csv: Path, by_image: bool = False, output_csv: Path | None = None):
    """Print keypoint statistics of a feature table.

    Args:
        features_csv: Feature table (N,IMGNAME,IMGID,I,KX,KY,A11,A12,A21,A22,MATCHES,INLIERS,HASPT3D,DESC).
        by_image: Break the counts down per source image.
        output_csv: Optionally save the counts as CSV.
    """
    features = read_features(features_csv)
    counts = feature_counts(features_to_frame(features), by_image=by_image)

    print(f"Read {len(features)} features from {features_csv}")
    print(counts.to_string())

    if output_csv is not None:
        output_csv.parent.mkdir(exist_ok=True, parents=True)
        counts.to_csv(output_csv)
        print(f"  -> {output_csv}")
    return counts


def cli():
    tyro.cli(summarize_features)


if __name__ == "__main__":
    cli()
