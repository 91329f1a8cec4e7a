import numpy as np
import pandas as pd
import pytest

from mmgsem import DimensionMismatch, GroupData, split_groups
from mmgsem.data import total_observations


def _frame():
    rng = np.random.default_rng(7)
    frame = pd.DataFrame(rng.normal(size=(60, 3)), columns=["a", "b", "c"])
    frame["grp"] = ["x"] * 25 + ["w"] * 35
    return frame


def test_split_groups_moments_match_pandas():
    frame = _frame()
    groups = split_groups(frame, ["a", "b", "c"], "grp")

    assert [g.name for g in groups] == ["w", "x"]
    assert [g.n_obs for g in groups] == [35, 25]
    sub = frame.loc[frame["grp"] == "w", ["a", "b", "c"]]
    np.testing.assert_allclose(groups[0].mean, sub.mean().to_numpy())
    np.testing.assert_allclose(groups[0].covariance, sub.cov(ddof=0).to_numpy())
    assert total_observations(groups) == 60
    assert total_observations(groups, np.array([1.0, 0.0])) == 35


def test_split_groups_drops_missing_rows():
    frame = _frame()
    frame.loc[0, "a"] = np.nan
    groups = split_groups(frame, ["a", "b", "c"], "grp")
    assert sum(g.n_obs for g in groups) == 59


def test_split_groups_reports_missing_columns():
    frame = _frame()
    with pytest.raises(DimensionMismatch):
        split_groups(frame, ["a", "b", "zz"], "grp")
    with pytest.raises(DimensionMismatch):
        split_groups(frame, ["a", "b"], "nope")


def test_from_moments_rescales_unbiased_covariance():
    cov = np.array([[2.0, 0.5], [0.5, 1.0]])
    group = GroupData.from_moments("g", 11, [0.0, 1.0], cov, unbiased=True)
    np.testing.assert_allclose(group.covariance, cov * 10 / 11)
    assert group.n_indicators == 2


@pytest.mark.parametrize(
    "mean, cov",
    [
        ([0.0, 0.0], np.eye(3)),
        ([0.0, 0.0], np.ones((2, 3))),
        ([0.0, 0.0], np.array([[1.0, 0.2], [0.3, 1.0]])),
    ],
)
def test_group_data_validates_shapes(mean, cov):
    with pytest.raises(DimensionMismatch):
        GroupData("g", 10, np.asarray(mean), cov)


def test_group_data_needs_two_observations():
    with pytest.raises(DimensionMismatch):
        GroupData.from_rows("g", [[1.0, 2.0]])
