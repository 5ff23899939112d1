"""Incremental sliding-window smoother.

Keeps every variable and factor added since the last reset. Each update
inserts the new ones and takes one Gauss-Newton step over the whole
window: the whitened Jacobian is assembled as a scipy.sparse matrix, the
normal equations are factored with a sparse LU and the step is applied
through each variable's boxplus. Marginal covariances are read from the
inverse of the same information matrix at the current estimate.
"""
import numpy as np
from scipy.sparse import coo_matrix, identity
from scipy.sparse.linalg import splu

from .state import value_boxplus, value_dim

# Diagonal loading of the information matrix
DAMPING = 1e-9


class IncrementalSmoother:

    def __init__(self):
        self.reset()

    def reset(self):
        """Drop every variable and factor."""
        self.values = {}
        self.factors = []

    def __contains__(self, key):
        return key in self.values

    def add(self, factors=(), values=None):
        """Insert new variables and factors without solving."""
        values = values or {}
        for key in values:
            if key in self.values:
                raise KeyError(f"Variable {key} already exists")
        for factor in factors:
            for key in factor.keys:
                if key not in self.values and key not in values:
                    raise KeyError(f"Factor references unknown variable {key}")
        self.values.update(values)
        self.factors.extend(factors)

    def update(self, factors=(), values=None) -> float:
        """Insert, then take one Gauss-Newton step.

        Returns:
            Total error after the step.
        """
        self.add(factors, values)
        if not self.factors:
            return 0.0

        ordering, offsets, dim = self._ordering()
        J, r = self._linearize(offsets, dim)
        lu = splu(self._information(J, dim))
        dx = lu.solve(-(J.T @ r))

        for key in ordering:
            start = offsets[key]
            n = value_dim(self.values[key])
            self.values[key] = value_boxplus(self.values[key], dx[start:start + n])
        return self.error()

    def error(self) -> float:
        return sum(f.error(self.values) for f in self.factors)

    def calculate_estimate(self, key=None):
        if key is None:
            return dict(self.values)
        return self.values[key]

    def marginal_covariance(self, key) -> np.ndarray:
        """Covariance of one variable in its tangent space."""
        if key not in self.values:
            raise KeyError(f"Unknown variable {key}")
        _, offsets, dim = self._ordering()
        J, _ = self._linearize(offsets, dim)
        lu = splu(self._information(J, dim))

        start = offsets[key]
        n = value_dim(self.values[key])
        rhs = np.zeros((dim, n))
        rhs[start:start + n, :] = np.eye(n)
        cov = lu.solve(rhs)[start:start + n, :]
        return 0.5 * (cov + cov.T)

    def _ordering(self):
        ordering = list(self.values.keys())
        offsets = {}
        dim = 0
        for key in ordering:
            offsets[key] = dim
            dim += value_dim(self.values[key])
        return ordering, offsets, dim

    def _linearize(self, offsets: dict, dim: int):
        rows = []
        cols = []
        data = []
        residuals = []
        row = 0
        for factor in self.factors:
            r, blocks = factor.linearize(self.values)
            m = len(r)
            for key, H in zip(factor.keys, blocks):
                n = H.shape[1]
                rr, cc = np.meshgrid(np.arange(m), np.arange(n), indexing='ij')
                rows.append((rr + row).ravel())
                cols.append((cc + offsets[key]).ravel())
                data.append(H.ravel())
            residuals.append(r)
            row += m

        J = coo_matrix((np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
                       shape=(row, dim)).tocsc()
        return J, np.concatenate(residuals)

    def _information(self, J, dim: int):
        return (J.T @ J + DAMPING * identity(dim, format='csc')).tocsc()
