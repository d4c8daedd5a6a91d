import numpy as np
import pytest

from gmm import GMM, COMPONENTS_COUNT, MODEL_SIZE, EPSILON, ModelStateError


OFFSETS = np.array([[0, 0, 0], [3, 0, 0], [0, 3, 0], [0, 0, 3], [-3, -3, -3]], dtype=np.float64)
CLUSTER_A = np.array([20.0, 20.0, 20.0])
CLUSTER_B = np.array([200.0, 200.0, 200.0])


def fit_two_clusters(n_components=COMPONENTS_COUNT):
    gmm = GMM(n_components=n_components)
    gmm.init_learning()
    for offset in OFFSETS:
        gmm.add_sample(0, CLUSTER_A + offset)
        gmm.add_sample(1, CLUSTER_B + offset)
    gmm.end_learning()
    return gmm


def test_empty_model_is_zeroed():
    gmm = GMM()
    assert gmm.n_components == COMPONENTS_COUNT
    buf = gmm.to_buffer()
    assert buf.shape == (1, MODEL_SIZE * COMPONENTS_COUNT)
    assert buf.dtype == np.float64
    assert not buf.any()
    assert gmm.mixture_density((1, 2, 3)) == 0.0


def test_empty_array_counts_as_empty_model():
    gmm = GMM(np.empty((0,)), n_components=2)
    assert gmm.to_buffer().shape == (1, 26)


@pytest.mark.parametrize("model", [
    np.zeros((1, 64)),
    np.zeros((1, 65), dtype=np.float32),
    np.zeros(65),
    np.zeros((5, 13)),
    [0.0] * 65,
])
def test_malformed_buffer_is_rejected(model):
    with pytest.raises(ValueError):
        GMM(model)


def test_buffer_layout():
    k = 2
    buf = np.zeros((1, MODEL_SIZE * k))
    buf[0, 0] = 1.0  # weight of component 0
    buf[0, k:k + 3] = [10, 20, 30]  # mean of component 0
    buf[0, 4 * k:4 * k + 9] = np.eye(3).ravel()  # covariance of component 0

    gmm = GMM(buf, n_components=k)
    np.testing.assert_array_equal(gmm.weights, [1.0, 0.0])
    np.testing.assert_array_equal(gmm.means[0], [10, 20, 30])
    np.testing.assert_array_equal(gmm.covariances[0], np.eye(3))
    np.testing.assert_array_equal(gmm.inverse_covs[0], np.eye(3))
    assert gmm.cov_determs[0] == 1.0
    assert gmm.component_density(0, (10, 20, 30)) == 1.0
    assert gmm.component_density(1, (10, 20, 30)) == 0.0


def test_loading_does_not_alias_buffer():
    gmm = fit_two_clusters()
    buf = gmm.to_buffer()
    loaded = GMM(buf)
    buf[:] = 0
    assert loaded.weights[0] == pytest.approx(0.5)


def test_to_buffer_writes_in_place():
    gmm = fit_two_clusters()
    out = np.zeros((1, MODEL_SIZE * COMPONENTS_COUNT))
    assert gmm.to_buffer(out) is out
    np.testing.assert_array_equal(out[0, :COMPONENTS_COUNT], gmm.weights)

    with pytest.raises(ValueError):
        gmm.to_buffer(np.zeros((1, 10)))


def test_identical_samples_are_regularized():
    gmm = GMM()
    gmm.init_learning()
    for _ in range(10):
        gmm.add_sample(2, (100, 100, 100))
    gmm.end_learning()

    np.testing.assert_array_equal(gmm.weights, [0, 0, 1.0, 0, 0])
    np.testing.assert_array_equal(gmm.means[2], [100, 100, 100])
    np.testing.assert_allclose(gmm.covariances[2], 0.01 * np.eye(3), atol=1e-12)
    assert gmm.cov_determs[2] > EPSILON
    assert gmm.cov_determs[2] == pytest.approx(1e-6)

    for color in [(100, 100, 100), (0, 0, 0), (255, 12, 7)]:
        for ci in (0, 1, 3, 4):
            assert gmm.component_density(ci, color) == 0.0
        assert gmm.mixture_density(color) == gmm.component_density(2, color)


def test_weights_sum_to_one_over_active_components():
    rng = np.random.RandomState(0)
    colors = rng.uniform(0, 255, size=(60, 3))
    components = rng.choice([0, 2, 3], size=60)

    gmm = GMM()
    gmm.init_learning()
    for ci, color in zip(components, colors):
        gmm.add_sample(ci, color)
    gmm.end_learning()

    assert gmm.weights[[0, 2, 3]].sum() == pytest.approx(1.0)
    assert gmm.weights[1] == 0
    assert gmm.weights[4] == 0
    for ci in (0, 2, 3):
        assert gmm.weights[ci] == np.count_nonzero(components == ci) / 60


def test_mixture_density_is_weighted_component_sum():
    gmm = fit_two_clusters()
    rng = np.random.RandomState(1)
    for color in rng.uniform(0, 255, size=(20, 3)):
        expected = 0.0
        for ci in range(gmm.n_components):
            expected += gmm.weights[ci] * gmm.component_density(ci, color)
        assert gmm.mixture_density(color) == expected


def test_densities_are_non_negative():
    gmm = fit_two_clusters()
    rng = np.random.RandomState(2)
    for color in rng.uniform(-50, 300, size=(50, 3)):
        for ci in range(gmm.n_components):
            assert gmm.component_density(ci, color) >= 0


def test_density_omits_two_pi_factor():
    gmm = fit_two_clusters()
    mean = gmm.means[0]
    assert gmm.component_density(0, mean) == pytest.approx(1 / np.sqrt(np.linalg.det(gmm.covariances[0])))


def test_which_component_separates_clusters():
    gmm = fit_two_clusters()
    assert gmm.which_component(CLUSTER_A + (1, -1, 0.5)) == 0
    assert gmm.which_component(CLUSTER_B + (-1, 1, 0.5)) == 1


def test_which_component_defaults_to_zero():
    gmm = GMM()
    gmm.init_learning()
    for offset in OFFSETS:
        gmm.add_sample(3, CLUSTER_A + offset)
    gmm.end_learning()

    assert gmm.which_component(CLUSTER_A) == 3
    # density underflows to 0 everywhere, so component 3 never beats the default
    assert gmm.which_component((1e4, 1e4, 1e4)) == 0


def test_fitted_mean_and_covariance():
    gmm = fit_two_clusters()
    np.testing.assert_allclose(gmm.means[0], CLUSTER_A)
    expected = OFFSETS.T @ OFFSETS / len(OFFSETS)
    np.testing.assert_allclose(gmm.covariances[0], expected, atol=1e-9)
    np.testing.assert_allclose(gmm.inverse_covs[0], np.linalg.inv(expected), rtol=1e-9)
    assert gmm.cov_determs[0] == pytest.approx(np.linalg.det(expected))


def test_recompute_cache_is_idempotent():
    gmm = fit_two_clusters()
    gmm.recompute_cache(0, 0.0)
    inverse, determ = gmm.inverse_covs.copy(), gmm.cov_determs.copy()
    gmm.recompute_cache(0, 0.0)
    np.testing.assert_array_equal(gmm.inverse_covs, inverse)
    np.testing.assert_array_equal(gmm.cov_determs, determ)


def test_recompute_cache_skips_inactive_component():
    gmm = GMM()
    gmm.covariances[1] = np.eye(3)
    gmm.recompute_cache(1, 0.01)
    assert gmm.cov_determs[1] == 0
    np.testing.assert_array_equal(gmm.covariances[1], np.eye(3))


def test_singular_covariance_without_fix_fails():
    buf = np.zeros((1, MODEL_SIZE))
    buf[0, 0] = 1.0
    with pytest.raises(ModelStateError):
        GMM(buf, n_components=1)


def test_querying_unfitted_component_fails():
    gmm = GMM()
    gmm.weights[0] = 1.0
    with pytest.raises(ModelStateError):
        gmm.component_density(0, (0, 0, 0))


def test_end_learning_without_samples_fails():
    gmm = GMM()
    gmm.init_learning()
    with pytest.raises(ModelStateError):
        gmm.end_learning()


def test_model_state_error_is_raised_explicitly():
    # raised with `raise`, not `assert`, so it also fires under python -O
    assert issubclass(ModelStateError, AssertionError)

    gmm = fit_two_clusters()
    weights = gmm.weights.copy()
    gmm.init_learning()
    with pytest.raises(ModelStateError, match="without any samples"):
        gmm.end_learning()
    np.testing.assert_array_equal(gmm.weights, weights)


def test_batch_query_of_unfitted_component_fails():
    gmm = GMM()
    gmm.weights[1] = 1.0
    with pytest.raises(ModelStateError):
        gmm.component_densities(np.zeros((4, 3)))


def test_init_learning_discards_partial_pass():
    gmm = GMM()
    gmm.init_learning()
    gmm.add_sample(0, (255, 0, 0))
    gmm.init_learning()
    for offset in OFFSETS:
        gmm.add_sample(1, CLUSTER_B + offset)
    gmm.end_learning()
    assert gmm.weights[0] == 0
    assert gmm.weights[1] == 1.0


def test_empty_component_is_deactivated_on_refit():
    gmm = fit_two_clusters()
    gmm.init_learning()
    for offset in OFFSETS:
        gmm.add_sample(1, CLUSTER_B + offset)
    gmm.end_learning()
    assert gmm.weights[0] == 0
    assert gmm.component_density(0, CLUSTER_A) == 0.0


def test_round_trip_reproduces_densities():
    gmm = fit_two_clusters()
    loaded = GMM(gmm.to_buffer())
    rng = np.random.RandomState(3)
    colors = np.vstack([rng.uniform(0, 255, size=(10, 3)), CLUSTER_A + OFFSETS, CLUSTER_B + OFFSETS])
    for color in colors:
        for ci in range(gmm.n_components):
            assert loaded.component_density(ci, color) == gmm.component_density(ci, color)


def test_round_trip_of_regularized_model():
    gmm = GMM(n_components=2)
    gmm.init_learning()
    for _ in range(4):
        gmm.add_sample(1, (5, 6, 7))
    gmm.end_learning()

    loaded = GMM(gmm.to_buffer(), n_components=2)
    assert loaded.cov_determs[1] == gmm.cov_determs[1]
    assert loaded.component_density(1, (5, 6, 7.5)) == gmm.component_density(1, (5, 6, 7.5))


def test_add_samples_matches_add_sample():
    rng = np.random.RandomState(4)
    colors = rng.uniform(0, 255, size=(40, 3))
    components = rng.randint(0, 3, size=40)

    one_by_one = GMM(n_components=3)
    one_by_one.init_learning()
    for ci, color in zip(components, colors):
        one_by_one.add_sample(ci, color)

    batch = GMM(n_components=3)
    batch.init_learning()
    batch.add_samples(components, colors)

    assert batch.stats.total_sample_count == one_by_one.stats.total_sample_count == 40
    np.testing.assert_array_equal(batch.stats.sample_counts, one_by_one.stats.sample_counts)
    np.testing.assert_allclose(batch.stats.sums, one_by_one.stats.sums)
    np.testing.assert_allclose(batch.stats.prods, one_by_one.stats.prods)


def test_add_samples_length_mismatch():
    gmm = GMM()
    with pytest.raises(ValueError):
        gmm.add_samples([0, 1], [(1, 2, 3)])


def test_batch_evaluation_matches_single_color():
    gmm = fit_two_clusters()
    rng = np.random.RandomState(5)
    colors = np.vstack([rng.uniform(0, 255, size=(30, 3)), CLUSTER_A + OFFSETS, CLUSTER_B + OFFSETS])

    densities = gmm.component_densities(colors)
    assert densities.shape == (len(colors), gmm.n_components)
    for n, color in enumerate(colors):
        for ci in range(gmm.n_components):
            assert densities[n, ci] == pytest.approx(gmm.component_density(ci, color), rel=1e-9, abs=1e-300)
        assert gmm.mixture_densities(colors)[n] == pytest.approx(gmm.mixture_density(color), rel=1e-9, abs=1e-300)

    expected = [gmm.which_component(color) for color in colors]
    np.testing.assert_array_equal(gmm.which_components(colors), expected)
