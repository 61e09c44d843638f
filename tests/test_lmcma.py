import numpy as np
import pytest

from nca_evolve.lmcma import LMCMA, StopReason


def sphere(X):
    return np.sum(X ** 2, axis=1)


def test_converges_on_sum_of_squares():
    es = LMCMA(np.full(10, 3.0), 1.0, sphere, max_fun_evals=20_000, fun_target=1e-8, seed=1)
    result = es.run()
    assert result.best.value < 1e-6
    assert np.all(np.abs(result.best.point) < 1e-2)
    assert result.reasons == [StopReason.TARGET_FUNCTION_VALUE]


def test_evaluation_budget():
    calls = []

    def objective(X):
        calls.append(X.shape)
        return sphere(X)

    es = LMCMA(np.full(5, 2.0), 0.5, objective, max_fun_evals=50, seed=0)
    result = es.run()
    assert result.reasons == [StopReason.MAX_FUNCTION_EVALUATIONS]
    assert 50 <= result.function_evals < 50 + es.lam
    assert all(shape == (es.lam, 5) for shape in calls)
    assert len(result.best_history) == len(calls)
    assert min(result.best_history) == result.best.value


def test_mirrored_pairs_share_a_direction():
    samples = []

    def objective(X):
        samples.append(X.copy())
        return sphere(X)

    x0 = np.array([1.0, -2.0, 0.5, 4.0])
    es = LMCMA(x0, 0.3, objective, max_fun_evals=1, seed=3)
    es.run()
    X = samples[0]
    for k in range(0, es.lam - 1, 2):
        np.testing.assert_allclose(X[k] + X[k + 1], 2 * x0)


def test_same_seed_same_result():
    a = LMCMA(np.ones(6), 0.5, sphere, max_fun_evals=300, seed=5).run()
    b = LMCMA(np.ones(6), 0.5, sphere, max_fun_evals=300, seed=5).run()
    np.testing.assert_array_equal(a.best.point, b.best.point)
    assert a.best_history == b.best_history


def test_min_sigma_stop():
    es = LMCMA(np.ones(3), 1e-3, sphere, min_sigma=1e-2)
    assert es.run().reasons == [StopReason.MIN_SIGMA]


def test_flat_objective_stops_on_history():
    es = LMCMA(np.ones(4), 0.5, lambda X: np.ones(len(X)), max_fun_evals=100_000, seed=0)
    result = es.run()
    assert result.reasons == [StopReason.TOL_FUN_HIST]
    assert len(result.best_history) == es.tol_fun_window


def test_default_population_size():
    es = LMCMA(np.zeros(230), 0.1, sphere)
    assert es.lam == 4 + int(np.floor(3 * np.log(230)))
    assert es.mu == es.lam // 2
    assert es.weights.sum() == pytest.approx(1.0)


@pytest.mark.parametrize("x0, sigma", [([], 1.0), ([1.0, np.nan], 1.0), ([1.0], 0.0), ([1.0], np.inf)])
def test_invalid_start(x0, sigma):
    with pytest.raises(ValueError):
        LMCMA(x0, sigma, sphere)
