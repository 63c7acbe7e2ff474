import numpy as np
import pytest

from paircall.afreq import AlleleFreqGrid, ContinuousAFRange, DiscreteAlleleFreqs
from paircall.errors import ConfigError, ModelError


def test_feasible_diploid():
    afs = DiscreteAlleleFreqs.feasible(2)
    assert afs.values == (0.0, 0.5, 1.0)
    assert afs.not_absent().values == (0.5, 1.0)
    assert DiscreteAlleleFreqs.absent().values == (0.0,)


@pytest.mark.parametrize("ploidy,amp", [(1, 1), (2, 1), (3, 1), (2, 2), (4, 3)])
def test_feasible_cardinality_and_bounds(ploidy, amp):
    afs = DiscreteAlleleFreqs.feasible(ploidy, amp)
    assert len(afs) == ploidy * amp + 1
    assert afs.contains(0.0) and afs.contains(1.0)


@pytest.mark.parametrize("ploidy,amp", [(0, 1), (-1, 1), (2, 0)])
def test_feasible_rejects_non_positive(ploidy, amp):
    with pytest.raises(ModelError):
        DiscreteAlleleFreqs.feasible(ploidy, amp)


def test_discrete_values_are_sorted_and_unique():
    assert DiscreteAlleleFreqs([1.0, 0.5, 0.5, 0.0]).values == (0.0, 0.5, 1.0)
    with pytest.raises(ConfigError):
        DiscreteAlleleFreqs([0.5, 1.5])
    with pytest.raises(ConfigError):
        DiscreteAlleleFreqs([0.0]).not_absent()


def test_continuous_range_endpoints():
    closed = ContinuousAFRange(0.05, 1.0)
    assert closed.contains(0.05) and closed.contains(1.0)
    half_open = ContinuousAFRange(0.0, 0.05, end_inclusive=False)
    assert half_open.contains(0.0)
    assert not half_open.contains(0.05)
    assert str(half_open) == "[0, 0.05)"
    left_open = ContinuousAFRange(0.0, 1.0, start_inclusive=False)
    assert not left_open.contains(0.0)
    assert left_open.contains(1e-6)


def test_continuous_range_validation():
    with pytest.raises(ConfigError):
        ContinuousAFRange(0.5, 0.2)
    with pytest.raises(ConfigError):
        ContinuousAFRange(-0.1, 0.2)
    with pytest.raises(ConfigError):
        ContinuousAFRange(0.3, 0.3, end_inclusive=False)
    assert ContinuousAFRange(0.3, 0.3).contains(0.3)


def test_grid_contains_extra_points_and_covers_unit_interval():
    grid = AlleleFreqGrid.build(11, extra=[0.05, 1 / 3])
    assert grid.points[0] == 0.0 and grid.points[-1] == 1.0
    assert np.isclose(grid.points, 0.05).any()
    assert np.isclose(grid.points, 1 / 3).any()
    assert np.all(np.diff(grid.points) > 0)
    assert grid.lower[0] == 0.0 and grid.upper[-1] == 1.0
    assert np.allclose(grid.upper[:-1], grid.lower[1:])
    assert grid.index_of(0.05) == int(np.argmin(np.abs(grid.points - 0.05)))
    assert grid.index_of(1.0) == len(grid) - 1


def test_grid_merges_near_duplicates():
    grid = AlleleFreqGrid([0.5, 0.5 + 1e-12, 0.2])
    assert list(grid.points) == [0.0, 0.2, 0.5, 1.0]
