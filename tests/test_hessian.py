import numpy as np

from ipsolve.blocks.hessian import LBFGSHessian


class TestLBFGSHessian:
    def test_starts_from_identity(self):
        np.testing.assert_allclose(LBFGSHessian(3).matrix().toarray(), np.eye(3))

    def test_secant_condition(self):
        """The newest pair is interpolated exactly: B s = y."""
        H = LBFGSHessian(2)
        s, y = np.array([1.0, 0.0]), np.array([2.0, 0.0])
        assert H.update(s, y)
        np.testing.assert_allclose(H.matrix() @ s, y, rtol=1e-12)
        assert H.gamma == 2.0

    def test_damping_keeps_positive_definite(self):
        H = LBFGSHessian(2)
        s = np.array([1.0, 1.0])
        assert H.update(s, -s)
        B = H.matrix().toarray()
        np.testing.assert_allclose(B, B.T)
        assert np.all(np.linalg.eigvalsh(B) > 0.0)
        # the damped pair has s^T y = 0.2 s^T B0 s
        assert np.isclose(s @ H.Y[0], 0.4)

    def test_memory_limit(self):
        H = LBFGSHessian(3, memory=2)
        rng = np.random.default_rng(1)
        A = np.diag([1.0, 2.0, 3.0])
        for _ in range(4):
            s = rng.standard_normal(3)
            H.update(s, A @ s)
        assert len(H.S) == 2 and len(H.Y) == 2

    def test_tiny_step_is_skipped(self):
        H = LBFGSHessian(2)
        assert not H.update(np.array([1e-12, 0.0]), np.array([1.0, 0.0]))
        assert not H.update(np.array([1.0, 0.0]), np.array([np.nan, 0.0]))
        assert len(H.S) == 0

    def test_reset(self):
        H = LBFGSHessian(2)
        H.update(np.array([1.0, 0.0]), np.array([3.0, 0.0]))
        H.reset()
        assert H.gamma == 1.0 and len(H.S) == 0
