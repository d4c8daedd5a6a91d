import numpy as np
from dataclasses import dataclass


COMPONENTS_COUNT = 5
MODEL_SIZE = 3 + 9 + 1  # mean + covariance + component weight
SINGULAR_DETERM = 1e-6
SINGULAR_FIX = 0.01
EPSILON = np.finfo(np.float64).eps


class ModelStateError(AssertionError):
    """Internal-consistency failure of a GMM, raised even under python -O."""


@dataclass
class SampleStats:
    sums: np.ndarray
    prods: np.ndarray
    sample_counts: np.ndarray
    total_sample_count: int = 0

    @classmethod
    def zeros(cls, n_components):
        return cls(np.zeros((n_components, 3)),
                   np.zeros((n_components, 3, 3)),
                   np.zeros(n_components, dtype=np.int64))


def _determinant(c):
    return c[0] * (c[4] * c[8] - c[5] * c[7]) - c[1] * (c[3] * c[8] - c[5] * c[6]) + c[2] * (c[3] * c[7] - c[4] * c[6])


class GMM:
    """
    Gaussian mixture over 3-channel colors with a fixed number of components.

    Parameters live in three arrays (weights, means, covariances). The flat
    model buffer of size MODEL_SIZE * n_components, laid out as
    [weights][means][covariances], is only used to load and save them.

    Learning goes through init_learning / add_sample / end_learning. The
    model is not thread safe while learning.
    """

    def __init__(self, model=None, n_components=COMPONENTS_COUNT):
        if n_components < 1:
            raise ValueError(f"n_components must be positive, got {n_components}")
        self.n_components = n_components

        if model is None or (isinstance(model, np.ndarray) and model.size == 0):
            model = np.zeros((1, self.buffer_size), dtype=np.float64)
        else:
            self._check_buffer(model)

        flat = model[0]
        k = n_components
        self.weights = flat[:k].copy()
        self.means = flat[k:4 * k].reshape(k, 3).copy()
        self.covariances = flat[4 * k:].reshape(k, 3, 3).copy()

        # derived from covariances, never saved
        self.inverse_covs = np.zeros((k, 3, 3))
        self.cov_determs = np.zeros(k)

        for ci in range(k):
            if self.weights[ci] > 0:
                self.recompute_cache(ci, 0.0)

        self.stats = SampleStats.zeros(k)

    @property
    def buffer_size(self):
        return MODEL_SIZE * self.n_components

    def _check_buffer(self, model):
        if (not isinstance(model, np.ndarray) or model.dtype != np.float64
                or model.shape != (1, self.buffer_size)):
            raise ValueError(f"model must be a float64 array with 1 row and {self.buffer_size} columns "
                             f"(13 * n_components)")

    def to_buffer(self, out=None):
        """Serialize the parameters to the flat model layout, in place when `out` is given."""
        if out is None:
            out = np.empty((1, self.buffer_size), dtype=np.float64)
        else:
            self._check_buffer(out)
        k = self.n_components
        out[0, :k] = self.weights
        out[0, k:4 * k] = self.means.ravel()
        out[0, 4 * k:] = self.covariances.ravel()
        return out

    def recompute_cache(self, ci, singular_fix):
        if self.weights[ci] <= 0:
            return

        c = self.covariances[ci]
        dtrm = _determinant(c.ravel())
        if dtrm <= SINGULAR_DETERM and singular_fix > 0:
            # add white noise to the diagonal to avoid a singular covariance
            c[0, 0] += singular_fix
            c[1, 1] += singular_fix
            c[2, 2] += singular_fix
            dtrm = _determinant(c.ravel())
        self.cov_determs[ci] = dtrm

        if not dtrm > EPSILON:
            raise ModelStateError(f"covariance of component {ci} is singular (det={dtrm})")

        c = c.ravel()
        inv_dtrm = 1.0 / dtrm
        inv = self.inverse_covs[ci]
        inv[0, 0] = (c[4] * c[8] - c[5] * c[7]) * inv_dtrm
        inv[1, 0] = -(c[3] * c[8] - c[5] * c[6]) * inv_dtrm
        inv[2, 0] = (c[3] * c[7] - c[4] * c[6]) * inv_dtrm
        inv[0, 1] = -(c[1] * c[8] - c[2] * c[7]) * inv_dtrm
        inv[1, 1] = (c[0] * c[8] - c[2] * c[6]) * inv_dtrm
        inv[2, 1] = -(c[0] * c[7] - c[1] * c[6]) * inv_dtrm
        inv[0, 2] = (c[1] * c[5] - c[2] * c[4]) * inv_dtrm
        inv[1, 2] = -(c[0] * c[5] - c[2] * c[3]) * inv_dtrm
        inv[2, 2] = (c[0] * c[4] - c[1] * c[3]) * inv_dtrm

    # -------- density evaluation --------

    def component_density(self, ci, color):
        """
        Gaussian density of component `ci` at `color`, normalized by 1/sqrt(det) only.

        The (2*pi)^(3/2) factor is left out; callers only compare densities.
        """
        if self.weights[ci] <= 0:
            return 0.0
        determ = self.cov_determs[ci]
        if not determ > EPSILON:
            raise ModelStateError(f"component {ci} queried before being fitted")

        inv = self.inverse_covs[ci]
        m = self.means[ci]
        d0 = float(color[0]) - m[0]
        d1 = float(color[1]) - m[1]
        d2 = float(color[2]) - m[2]
        mult = (d0 * (d0 * inv[0, 0] + d1 * inv[1, 0] + d2 * inv[2, 0])
                + d1 * (d0 * inv[0, 1] + d1 * inv[1, 1] + d2 * inv[2, 1])
                + d2 * (d0 * inv[0, 2] + d1 * inv[1, 2] + d2 * inv[2, 2]))
        return float(1.0 / np.sqrt(determ) * np.exp(-0.5 * mult))

    def mixture_density(self, color):
        res = 0.0
        for ci in range(self.n_components):
            res += self.weights[ci] * self.component_density(ci, color)
        return float(res)

    def which_component(self, color):
        # a component has to beat density 0 to replace the default index 0
        k = 0
        max_density = 0.0
        for ci in range(self.n_components):
            p = self.component_density(ci, color)
            if p > max_density:
                k = ci
                max_density = p
        return k

    def component_densities(self, colors):
        """Densities of every component for an (N, 3) array of colors, shape (N, n_components)."""
        colors = np.asarray(colors, dtype=np.float64).reshape(-1, 3)
        densities = np.zeros((colors.shape[0], self.n_components))
        for ci in np.flatnonzero(self.weights > 0):
            determ = self.cov_determs[ci]
            if not determ > EPSILON:
                raise ModelStateError(f"component {ci} queried before being fitted")
            diff = colors - self.means[ci]
            mult = np.einsum('nj,ji,ni->n', diff, self.inverse_covs[ci], diff)
            densities[:, ci] = 1.0 / np.sqrt(determ) * np.exp(-0.5 * mult)
        return densities

    def mixture_densities(self, colors):
        return self.component_densities(colors) @ self.weights

    def which_components(self, colors):
        # argmax keeps the first maximum, and all-zero rows map to 0
        return np.argmax(self.component_densities(colors), axis=1)

    # -------- learning --------

    def init_learning(self):
        self.stats = SampleStats.zeros(self.n_components)

    def add_sample(self, ci, color):
        color = np.asarray(color, dtype=np.float64)
        self.stats.sums[ci] += color
        self.stats.prods[ci] += np.outer(color, color)
        self.stats.sample_counts[ci] += 1
        self.stats.total_sample_count += 1

    def add_samples(self, components, colors):
        """Accumulate many (component, color) pairs at once."""
        components = np.asarray(components, dtype=np.intp).ravel()
        colors = np.asarray(colors, dtype=np.float64).reshape(-1, 3)
        if components.shape[0] != colors.shape[0]:
            raise ValueError(f"got {components.shape[0]} components for {colors.shape[0]} colors")
        np.add.at(self.stats.sums, components, colors)
        np.add.at(self.stats.prods, components, colors[:, :, np.newaxis] * colors[:, np.newaxis, :])
        np.add.at(self.stats.sample_counts, components, 1)
        self.stats.total_sample_count += int(components.shape[0])

    def end_learning(self):
        stats = self.stats
        if stats.total_sample_count <= 0:
            raise ModelStateError("end_learning called without any samples")

        for ci in range(self.n_components):
            n = int(stats.sample_counts[ci])
            if n == 0:
                self.weights[ci] = 0
                continue

            inv_n = 1.0 / n
            self.weights[ci] = n / stats.total_sample_count
            m = stats.sums[ci] * inv_n
            self.means[ci] = m
            # second moment minus the mean's outer product, all 9 entries
            self.covariances[ci] = stats.prods[ci] * inv_n - np.outer(m, m)
            self.recompute_cache(ci, SINGULAR_FIX)
