import pytest

from mmgsem import (
    ClusterAssignmentEngine,
    fit_measurement,
    parse_measurement,
    parse_structural,
    simulate_data,
    split_groups,
)
from mmgsem.simulate import TUTORIAL_PARTIAL


@pytest.fixture(scope="session")
def simulated():
    return simulate_data(n_groups=12, n_clusters=4, n_per_group=200, seed=2025)


@pytest.fixture(scope="session")
def measurement_fit(simulated):
    spec = parse_measurement(simulated.S1, TUTORIAL_PARTIAL)
    groups = split_groups(simulated.data, spec.indicators, "group")
    return fit_measurement(spec, groups)


@pytest.fixture(scope="session")
def structural_spec(measurement_fit, simulated):
    return parse_structural(simulated.S2, measurement_fit.spec.factors)


@pytest.fixture(scope="session")
def engine(measurement_fit, structural_spec):
    return ClusterAssignmentEngine(measurement_fit, structural_spec, nstarts=5)


@pytest.fixture(scope="session")
def four_cluster_model(engine):
    return engine.fit(4, seed=1)
