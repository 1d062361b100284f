import pandas as pd

from feature_stats import feature_counts, features_to_frame, summarize_features
from utils import read_features

from conftest import feature_row


def sample_rows():
    return [
        feature_row(0, matches=0, inliers=0, has3d=False),
        feature_row(1, matches=3, inliers=0, has3d=False),
        feature_row(2, matches=3, inliers=2, has3d=True),
        feature_row(3, image="IMG_0002.JPG", matches=1, inliers=1, has3d=True),
    ]


def test_features_to_frame(write_table):
    df = features_to_frame(read_features(write_table(sample_rows())))
    assert list(df["num"]) == [0, 1, 2, 3]
    assert list(df["image"].unique()) == ["IMG_0001.JPG", "IMG_0002.JPG"]
    assert df["has3D"].sum() == 2


def test_feature_counts_total(write_table):
    df = features_to_frame(read_features(write_table(sample_rows())))
    counts = feature_counts(df)["count"]
    assert counts["features"] == 4
    assert counts["with_matches"] == 3
    assert counts["with_inliers"] == 2
    assert counts["with_3D"] == 2


def test_feature_counts_by_image(write_table):
    df = features_to_frame(read_features(write_table(sample_rows())))
    counts = feature_counts(df, by_image=True)
    assert list(counts.index) == ["IMG_0001.JPG", "IMG_0002.JPG"]
    assert counts.loc["IMG_0001.JPG", "features"] == 3
    assert counts.loc["IMG_0002.JPG", "with_3D"] == 1


def test_summarize_features_writes_csv(write_table, tmp_path):
    out = tmp_path / "stats" / "counts.csv"
    counts = summarize_features(write_table(sample_rows()), by_image=True, output_csv=out)
    saved = pd.read_csv(out, index_col=0)
    assert list(saved.index) == list(counts.index)
    assert (saved.values == counts.values).all()
