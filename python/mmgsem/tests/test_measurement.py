import numpy as np
import pytest

from mmgsem import DimensionMismatch, GroupData, MeasurementFit, fit_measurement, parse_measurement
from mmgsem._linalg import central_jacobian
from mmgsem.measurement import MeasurementModel
from mmgsem.simulate import TUTORIAL_PARTIAL, TUTORIAL_S1

SMALL_S1 = "f1 =~ a + b + c\nf2 =~ d + e + f"


def _small_groups(n_groups=3, n_obs=400, seed=11):
    rng = np.random.default_rng(seed)
    lam = np.zeros((6, 2))
    lam[:3, 0] = [1.0, 0.7, 0.9]
    lam[3:, 1] = [1.0, 0.6, 0.8]
    groups = []
    for g in range(n_groups):
        phi = np.array([[1.0, 0.3], [0.3, 0.8]]) * (1.0 + 0.2 * g)
        sigma = lam @ phi @ lam.T + np.diag(np.full(6, 0.4))
        rows = rng.multivariate_normal(np.zeros(6), sigma, size=n_obs)
        groups.append(GroupData.from_rows(g + 1, rows))
    return groups


def test_discrepancy_gradient_matches_finite_differences():
    spec = parse_measurement(SMALL_S1, ["f1 =~ b"])
    groups = _small_groups()
    model = MeasurementModel(spec, len(groups))
    rng = np.random.default_rng(3)
    theta = model.start_values(groups) + rng.normal(scale=0.05, size=model.n_parameters)

    _, grad = model.discrepancy(theta, groups)
    numeric = central_jacobian(lambda t: np.array([model.discrepancy(t, groups)[0]]), theta, 1e-6)[0]
    np.testing.assert_allclose(grad, numeric, rtol=1e-4, atol=1e-4)


def test_parameter_layout_and_labels():
    spec = parse_measurement(SMALL_S1, ["f1 =~ b"])
    model = MeasurementModel(spec, 2)
    # shared: c, e, f; specific: b per group; 6 residuals and 3 Cholesky cells per group
    assert model.n_parameters == 3 + 2 + 12 + 6
    labels = model.labels(["g1", "g2"])
    assert labels[:3] == ["f1=~c", "f2=~e", "f2=~f"]
    assert labels[3] == "f1=~b.gg1"
    assert len(labels) == model.n_parameters


def test_small_cfa_recovers_loadings():
    spec = parse_measurement(SMALL_S1)
    fit = fit_measurement(spec, _small_groups())

    lam = fit.lambdas[0]
    assert lam[0, 0] == 1.0 and lam[3, 1] == 1.0
    assert lam[1, 0] == pytest.approx(0.7, abs=0.08)
    assert lam[2, 0] == pytest.approx(0.9, abs=0.08)
    assert lam[4, 1] == pytest.approx(0.6, abs=0.08)
    np.testing.assert_allclose(fit.thetas, 0.4, atol=0.12)
    assert fit.n_parameters == fit.model.n_parameters + 3 * 6


def test_factor_covariances_close_to_model_estimates():
    fit = fit_measurement(parse_measurement(SMALL_S1), _small_groups())
    for phi, cov in zip(fit.phis, fit.factor_covariances()):
        np.testing.assert_allclose(cov, phi, atol=0.05)
        assert np.all(np.linalg.eigvalsh(cov) > 0)


def test_measurement_covariance_matrix_is_positive():
    fit = fit_measurement(parse_measurement(SMALL_S1), _small_groups(n_groups=2))
    vcov = fit.covariance_matrix()
    assert vcov.shape == (fit.model.n_parameters, fit.model.n_parameters)
    assert np.all(np.diag(vcov) > 0)
    np.testing.assert_allclose(vcov, vcov.T)


def test_tutorial_measurement_fit(measurement_fit):
    fit = measurement_fit
    spec = fit.spec
    assert len(fit.groups) == 12
    assert spec.group_specific == parse_measurement(TUTORIAL_S1, TUTORIAL_PARTIAL).group_specific
    for factor, items in spec.loadings:
        col = spec.factors.index(factor)
        for item in items[2:]:
            row = spec.indicators.index(item)
            assert fit.lambdas[0][row, col] == pytest.approx(0.8, abs=0.1)
    # group-specific loadings differ between groups
    v2 = spec.indicators.index("V2")
    assert np.ptp([lam[v2, 0] for lam in fit.lambdas]) > 0.05
    assert np.all((fit.thetas > 0.15) & (fit.thetas < 0.7))


def test_from_matrices_rescales_and_detects_partial_invariance(measurement_fit):
    fit = measurement_fit
    scaled = []
    for lam in fit.lambdas:
        lam = lam.copy()
        lam[:, 0] *= 2.0
        scaled.append(lam)
    spec = parse_measurement(TUTORIAL_S1)
    supplied = MeasurementFit.from_matrices(spec, fit.groups, scaled, fit.thetas)

    assert supplied.spec.group_specific == fit.spec.group_specific
    for lam_a, lam_b in zip(supplied.lambdas, fit.lambdas):
        np.testing.assert_allclose(lam_a, lam_b, atol=1e-10)
    for cov_a, cov_b in zip(supplied.factor_covariances(), fit.factor_covariances()):
        np.testing.assert_allclose(cov_a, cov_b, atol=1e-8)


def test_from_matrices_rejects_bad_shapes(measurement_fit):
    fit = measurement_fit
    spec = parse_measurement(TUTORIAL_S1)
    with pytest.raises(DimensionMismatch):
        MeasurementFit.from_matrices(spec, fit.groups, np.ones((20, 3)), fit.thetas)
    with pytest.raises(DimensionMismatch):
        MeasurementFit.from_matrices(spec, fit.groups, np.ones((20, 4)), fit.thetas)
    with pytest.raises(DimensionMismatch):
        MeasurementFit.from_matrices(spec, fit.groups, fit.lambdas, fit.thetas[:5])


def test_fit_rejects_groups_with_wrong_indicators():
    spec = parse_measurement("f1 =~ a + b + c + d")
    with pytest.raises(DimensionMismatch):
        fit_measurement(spec, _small_groups(n_groups=1))
