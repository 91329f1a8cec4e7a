import logging

import numpy as np
import pytest

from mmgsem import (
    ClusterAssignmentEngine,
    DegenerateCluster,
    EstimationConfig,
    GroupData,
    InvalidK,
    MeasurementFit,
    NonConvergence,
    NonConvergenceWarning,
    StructuralEstimator,
    align_clusters,
)


def _recovers_partition(labels, truth):
    table = np.zeros((labels.max() + 1, truth.max() + 1), dtype=int)
    np.add.at(table, (labels, truth), 1)
    return np.all((table > 0).sum(axis=0) == 1) and np.all((table > 0).sum(axis=1) == 1)


def test_posteriors_are_distributions(engine):
    for k in (1, 2, 3):
        model = engine.fit(k, seed=3)
        assert model.posteriors.shape == (12, k)
        np.testing.assert_allclose(model.posteriors.sum(axis=1), 1.0)
        assert model.proportions.sum() == pytest.approx(1.0)


def test_em_history_is_monotone(four_cluster_model):
    model = four_cluster_model
    assert model.converged
    assert model.monotone
    if model.reinitializations == 0:
        diffs = np.diff(model.history)
        assert np.all(diffs >= -1e-6 * (1.0 + np.abs(model.history[:-1])))
    assert model.loglik == pytest.approx(model.history[-1])


def test_same_seed_same_solution(engine):
    a = engine.fit(3, seed=42)
    b = engine.fit(3, seed=42)
    assert np.array_equal(a.posteriors, b.posteriors)
    for ca, cb in zip(a.clusters, b.clusters):
        assert np.array_equal(ca.beta, cb.beta)
    assert a.start_logliks == b.start_logliks


def test_recovers_simulated_clusters(four_cluster_model, simulated):
    model = four_cluster_model
    assert _recovers_partition(model.modal_assignment, simulated.clusters)
    assert model.r2_entropy > 0.95

    truth = simulated.regressions
    for k in range(model.nclus):
        members = simulated.clusters[model.modal_assignment == k]
        assert np.all(members == members[0])
        np.testing.assert_allclose(model.clusters[k].coefficients(model.spec), truth[members[0]], atol=0.15)


def test_best_start_is_kept(four_cluster_model):
    model = four_cluster_model
    assert model.nstarts == 5
    assert len(model.start_logliks) == 5
    assert model.objective == pytest.approx(max(model.start_logliks))
    assert model.start_logliks[model.best_start] == model.objective


def test_one_cluster_equals_pooled_estimate(engine):
    model = engine.fit(1, seed=0)
    pooled = engine.estimator.estimate(np.ones(engine.n_groups))
    np.testing.assert_allclose(model.clusters[0].beta, pooled.beta, atol=1e-4)
    assert model.nstarts == 1
    assert np.isnan(model.r2_entropy)


def test_single_group_single_cluster(measurement_fit, structural_spec):
    single = MeasurementFit.from_matrices(
        measurement_fit.spec,
        measurement_fit.groups[:1],
        measurement_fit.lambdas[:1],
        measurement_fit.thetas[:1],
    )
    model = ClusterAssignmentEngine(single, structural_spec).fit(1)
    expected = StructuralEstimator(structural_spec, single.factor_covariances(), [single.groups[0].n_obs]).estimate(
        np.ones(1)
    )
    np.testing.assert_allclose(model.clusters[0].beta, expected.beta, atol=1e-8)
    np.testing.assert_allclose(model.posteriors, [[1.0]])


@pytest.mark.parametrize("nclus", [0, -1, 13])
def test_invalid_number_of_clusters(engine, nclus):
    with pytest.raises(InvalidK):
        engine.fit(nclus)


def test_hard_assignment_gives_one_hot_posteriors(measurement_fit, structural_spec, simulated):
    engine = ClusterAssignmentEngine(measurement_fit, structural_spec, assignment="hard", nstarts=5)
    model = engine.fit(4, seed=1)
    assert set(np.unique(model.posteriors)) <= {0.0, 1.0}
    assert _recovers_partition(model.modal_assignment, simulated.clusters)
    assert model.monotone


def test_user_start_from_true_partition(engine, simulated):
    labels = np.array([f"c{k}" for k in simulated.clusters])
    model = engine.fit(4, init=labels)
    assert model.nstarts == 1
    assert _recovers_partition(model.modal_assignment, simulated.clusters)


def test_user_start_validation(engine):
    with pytest.raises(ValueError):
        engine.fit(2, init=np.zeros(5, dtype=int))
    with pytest.raises(ValueError):
        engine.fit(2, init=np.arange(12))
    with pytest.raises(ValueError):
        engine.fit(2, init=np.full((12, 2), 0.7))
    with pytest.raises(ValueError):
        engine.fit(2, init_strategy="user")


def test_hierarchical_start_is_deterministic(engine, simulated):
    a = engine.fit(4, init_strategy="hierarchical")
    b = engine.fit(4, init_strategy="hierarchical")
    assert a.nstarts == 1
    assert np.array_equal(a.posteriors, b.posteriors)
    assert _recovers_partition(a.modal_assignment, simulated.clusters)


def _empty_start():
    init = np.zeros((12, 3))
    init[:6, 0] = 1.0
    init[6:, 1] = 1.0
    return init


def test_empty_cluster_raises_when_requested(measurement_fit, structural_spec):
    engine = ClusterAssignmentEngine(measurement_fit, structural_spec, on_empty_cluster="raise")
    with pytest.raises(DegenerateCluster) as info:
        engine.fit(3, init=_empty_start())
    assert info.value.cluster == 2
    assert info.value.nclus == 3
    assert "Cluster 3" in str(info.value)


def test_empty_cluster_is_reinitialised(engine):
    model = engine.fit(3, init=_empty_start(), seed=5)
    assert model.reinitializations >= 1
    assert np.all(model.posteriors.sum(axis=0) > 0)


def test_degenerate_start_is_skipped(measurement_fit, structural_spec, monkeypatch):
    engine = ClusterAssignmentEngine(measurement_fit, structural_spec, nstarts=3)
    run = engine._run

    def first_start_degenerates(z, nclus, rng, start):
        if start == 0:
            raise DegenerateCluster(nclus, 1, 4, start)
        return run(z, nclus, rng, start)

    monkeypatch.setattr(engine, "_run", first_start_degenerates)
    model = engine.fit(2, seed=1)
    assert len(model.start_logliks) == 3
    assert model.start_logliks[0] == -np.inf
    assert model.best_start in (1, 2)
    assert model.objective == pytest.approx(max(model.start_logliks))


def test_all_starts_degenerate(measurement_fit, structural_spec):
    engine = ClusterAssignmentEngine(measurement_fit, structural_spec, max_reinitializations=0)
    with pytest.raises(DegenerateCluster) as info:
        engine.fit(3, init=_empty_start())
    assert info.value.n_failed == 1
    assert info.value.nclus == 3
    assert "All 1 start(s) of the 3-cluster model degenerated" in str(info.value)


def test_duplicated_group_does_not_abort_remaining_starts(measurement_fit, structural_spec, caplog):
    first = measurement_fit.groups[0]
    copy = GroupData(name=99, n_obs=first.n_obs, mean=first.mean, covariance=first.covariance)
    fit = MeasurementFit.from_matrices(
        measurement_fit.spec,
        list(measurement_fit.groups[:4]) + [copy],
        list(measurement_fit.lambdas[:4]) + [measurement_fit.lambdas[0]],
        list(measurement_fit.thetas[:4]) + [measurement_fit.thetas[0]],
    )
    engine = ClusterAssignmentEngine(fit, structural_spec, assignment="hard", nstarts=3, max_reinitializations=2)
    with caplog.at_level(logging.WARNING, logger="mmgsem.engine"):
        try:
            model = engine.fit(5, seed=1)
        except DegenerateCluster as exc:
            assert exc.n_failed == 3
            skipped = 3
        else:
            assert len(model.start_logliks) == 3
            skipped = sum(np.isneginf(model.start_logliks))
            assert skipped < 3
    assert sum("skipped" in r.getMessage() for r in caplog.records) == skipped


def test_cluster_weight_threshold_must_be_positive():
    with pytest.raises(ValueError):
        EstimationConfig(min_cluster_weight=0)
    assert EstimationConfig(min_cluster_weight=1e-12).min_cluster_weight == 1e-12


def test_nonconvergence_warns(measurement_fit, structural_spec):
    engine = ClusterAssignmentEngine(measurement_fit, structural_spec, max_iterations=1, nstarts=2)
    with pytest.warns(NonConvergenceWarning):
        model = engine.fit(2, seed=1)
    assert not model.converged
    assert model.iterations == 1


def test_nonconvergence_raises_when_strict(measurement_fit, structural_spec):
    engine = ClusterAssignmentEngine(
        measurement_fit, structural_spec, max_iterations=1, nstarts=2, raise_on_nonconvergence=True
    )
    with pytest.raises(NonConvergence) as info:
        engine.fit(2, seed=1)
    assert info.value.model is not None
    assert not info.value.model.converged


def test_unknown_option_rejected(measurement_fit, structural_spec):
    with pytest.raises(ValueError):
        ClusterAssignmentEngine(measurement_fit, structural_spec, n_starts=3)


def test_align_clusters_undoes_permutation(four_cluster_model):
    model = four_cluster_model
    shuffled = model.permuted([2, 0, 3, 1])
    aligned = align_clusters(shuffled, model)
    np.testing.assert_allclose(aligned.posteriors, model.posteriors)
    for a, b in zip(aligned.clusters, model.clusters):
        assert np.array_equal(a.beta, b.beta)
    with pytest.raises(ValueError):
        model.permuted([0, 0, 1, 2])
