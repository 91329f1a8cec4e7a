import numpy as np
import pytest

import mmgsem as mg
from mmgsem import api
from mmgsem.config import normalize_nclus
from mmgsem.simulate import TUTORIAL_PARTIAL


def test_mmgsem_from_raw_data(simulated):
    fit = mg.mmgsem(
        simulated.data,
        simulated.S1,
        simulated.S2,
        group="group",
        nclus=2,
        seed=3,
        group_partial=TUTORIAL_PARTIAL,
        nstarts=3,
    )
    assert fit.nclus == 2
    assert fit.group_names == list(range(1, 13))
    assert fit.regressions.shape == (4, 2)
    assert list(fit.posterior_table.columns) == ["Cluster 1", "Cluster 2"]
    assert "Mixture multigroup SEM with 2 cluster(s) and 12 groups" in repr(fit.summary())


def test_mmgsem_reuses_step1_fit(simulated, measurement_fit, four_cluster_model):
    fit = mg.mmgsem(None, simulated.S1, simulated.S2, nclus=4, seed=1, s1_fit=measurement_fit, nstarts=5)
    assert fit.measurement is measurement_fit
    assert fit.loglik == pytest.approx(four_cluster_model.loglik)


def test_mmgsem_argument_checks(simulated, measurement_fit):
    with pytest.raises(mg.InvalidK):
        mg.mmgsem(None, simulated.S1, simulated.S2, nclus=(1, 3), s1_fit=measurement_fit)
    with pytest.raises(ValueError):
        mg.mmgsem(simulated.data, simulated.S1, simulated.S2, nclus=2)
    with pytest.raises(mg.DimensionMismatch):
        mg.mmgsem(None, "F1 =~ V1 + V2 + V3", "F1 ~ F1", s1_fit=measurement_fit)
    with pytest.raises(mg.InvalidModelSyntax):
        mg.mmgsem(None, simulated.S1, "F4 ~ F3\nF3 ~ F4", s1_fit=measurement_fit)


def test_model_selection_and_extract(simulated, measurement_fit):
    selection = mg.model_selection(
        None,
        simulated.S1,
        simulated.S2,
        nclus=(2, 4),
        seed=8,
        s1_fit=measurement_fit,
        nstarts=3,
        n_jobs=2,
        chull_tiebreak="complex",
    )
    assert selection.nclus == [2, 3, 4]
    assert selection.chull_tiebreak == "complex"
    chosen = mg.extract(selection, 4)
    assert chosen.nclus == 4
    with pytest.raises(mg.InvalidK):
        mg.extract(selection, 1)


def test_se_and_tests_from_frontend(four_cluster_model):
    se = mg.compute_se(four_cluster_model, naive=True, min_posterior=0.01)
    assert se.info["min_posterior"] == 0.01
    result = api.test_mmgsem(four_cluster_model, se, multiple_comparison=True, correction="holm")
    assert result.correction == "holm"
    assert len(result.pairwise) == 6
    assert np.all(result.pairwise["p_adjusted"] <= 1.0)


def test_observed_loglik_is_finite(four_cluster_model):
    value = four_cluster_model.observed_loglik()
    assert np.isfinite(value)
    assert value < 0


@pytest.mark.parametrize("nclus", [2, np.int64(2), np.int32(2)])
def test_numpy_integer_cluster_counts(simulated, measurement_fit, nclus):
    fit = mg.mmgsem(None, simulated.S1, simulated.S2, nclus=nclus, seed=3, s1_fit=measurement_fit, nstarts=2)
    assert fit.nclus == 2
    selection = mg.model_selection(
        None, simulated.S1, simulated.S2, nclus=nclus, seed=3, s1_fit=measurement_fit, nstarts=2
    )
    assert selection.nclus == [2]
    assert normalize_nclus(nclus) == (2, 2)
    assert normalize_nclus((np.int64(1), nclus)) == (1, 2)


def test_boolean_cluster_count_is_rejected(simulated, measurement_fit):
    with pytest.raises(mg.InvalidK):
        mg.mmgsem(None, simulated.S1, simulated.S2, nclus=True, s1_fit=measurement_fit)
