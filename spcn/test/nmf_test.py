import unittest

import numpy as np
import spcn
import spcn.norm.utils as ut
from spcn import errors
from spcn.norm import nmf
from spcn.test.utils import (two_by_two_image, synthetic_he_image, uniform_image,
                             stain_od, HEMATOXYLIN, EOSIN, UNSTAINED, WHITE)


class TestFactorization(unittest.TestCase):

    @classmethod
    def setUpClass(cls) -> None:
        cls._orig_logging_level = spcn.getLoggingLevel()  # type: ignore
        spcn.setLoggingLevel(40)
        rng = np.random.RandomState(7)
        cls.W_true = rng.random_sample((3, 2)).astype(np.float32) + 0.1  # type: ignore
        cls.H_true = rng.random_sample((2, 60)).astype(np.float32)  # type: ignore
        cls.V = (np.dot(cls.W_true, cls.H_true)  # type: ignore
                 + 0.05 * rng.random_sample((3, 60))).astype(np.float32)
        cls.W0 = rng.random_sample((3, 2)).astype(np.float32) + 0.1  # type: ignore
        cls.H0 = rng.random_sample((2, 60)).astype(np.float32) + 0.1  # type: ignore

    @classmethod
    def tearDownClass(cls) -> None:
        spcn.setLoggingLevel(cls._orig_logging_level)  # type: ignore
        return super().tearDownClass()

    def _errors(self, solver, error_fn, iterations=25, **kwargs):
        results = []
        for i in range(iterations):
            W, H = solver(self.V, self.W0, self.H0, lambda_=0, max_iterations=i, **kwargs)
            results.append(error_fn(self.V, W, H))
        return results

    def _assert_non_increasing(self, values):
        for before, after in zip(values, values[1:]):
            self.assertLessEqual(after, before * (1 + 1e-4) + 1e-6)

    # --- Solvers -------------------------------------------------------------

    def test_euclidean_error_non_increasing(self):
        errs = self._errors(nmf.virtanen_euclidean, nmf.euclidean_error)
        self._assert_non_increasing(errs)
        self.assertLess(errs[-1], errs[0])

    def test_divergence_error_non_increasing(self):
        errs = self._errors(nmf.virtanen_kl_divergence, nmf.kl_divergence_error)
        self._assert_non_increasing(errs)
        self.assertLess(errs[-1], errs[0])

    def test_unnormalized_error_non_increasing(self):
        self._assert_non_increasing(self._errors(
            nmf.virtanen_euclidean, nmf.euclidean_error, preserve_norms=False))

    def test_solvers_non_negative(self):
        for solver in (nmf.virtanen_euclidean, nmf.virtanen_kl_divergence):
            for lambda_ in (0, ut.LAMBDA, 1.0):
                for i in range(25):
                    W, H = solver(self.V, self.W0, self.H0, lambda_=lambda_, max_iterations=i)
                    self.assertGreaterEqual(float(W.min()), 0, msg=f"{solver.__name__}, {i} iterations")
                    self.assertGreaterEqual(float(H.min()), 0, msg=f"{solver.__name__}, {i} iterations")
                    self.assertEqual(W.shape, (3, 2))
                    self.assertEqual(H.shape, (2, 60))

    def test_zero_iterations_returns_seed(self):
        W, H = nmf.virtanen_euclidean(self.V, self.W0, self.H0, max_iterations=0)
        self.assertTrue(np.array_equal(W, self.W0))
        self.assertTrue(np.array_equal(H, self.H0))
        self.assertIsNot(W, self.W0)

    def test_preserve_norms(self):
        W, _ = nmf.virtanen_kl_divergence(self.V, self.W0, self.H0, max_iterations=10)
        self.assertTrue(np.allclose(np.linalg.norm(W, axis=0),
                                    np.linalg.norm(self.W0, axis=0), rtol=1e-4))

    def test_refine_mode(self):
        with self.assertRaises(ValueError):
            nmf.refine(self.V, self.W0, self.H0, mode='cosine', max_iterations=1)

    def test_kl_divergence_of_exact_factorization(self):
        V = np.dot(self.W_true, self.H_true)
        self.assertAlmostEqual(nmf.kl_divergence_error(V, self.W_true, self.H_true), 0, places=3)
        self.assertAlmostEqual(nmf.euclidean_error(V, self.W_true, self.H_true), 0, places=6)

    # --- Seeds and full factorization ----------------------------------------

    def test_two_by_two_factorization(self):
        V = ut.image_to_matrix(two_by_two_image())
        f = nmf.image_to_nmf(V)
        self.assertTrue(np.allclose(f.unstained, WHITE))
        self.assertTrue(np.allclose(f.W[:, 0], stain_od(HEMATOXYLIN, WHITE), atol=1e-4))
        self.assertTrue(np.allclose(f.W[:, 1], stain_od(EOSIN, WHITE), atol=1e-4))
        self.assertTrue(np.allclose(f.H, [[1, 1, 0, 0], [0, 0, 1, 0]], atol=1e-4))
        self.assertTrue(np.allclose(f.reconstruct(), V, atol=1e-2))

    def test_swapped_channels_swap_stains(self):
        V = ut.image_to_matrix(two_by_two_image())
        f = nmf.image_to_nmf(V, 1, 0)
        self.assertTrue(np.allclose(f.W[:, 0], stain_od(EOSIN, WHITE), atol=1e-4))
        self.assertTrue(np.allclose(f.H, [[0, 0, 1, 0], [1, 1, 0, 0]], atol=1e-4))

    def test_synthetic_concentrations(self):
        img, concentrations = synthetic_he_image(seed=1)
        f = nmf.image_to_nmf(ut.image_to_matrix(img))
        self.assertEqual(f.num_pixels, img.shape[0] * img.shape[1])
        self.assertTrue(np.allclose(f.unstained, UNSTAINED, atol=2))
        self.assertGreaterEqual(float(f.H.min()), 0)
        # Seeded concentrations match the rendered ones up to quantization.
        self.assertLess(float(np.abs(f.H - concentrations).mean()), 0.02)

    def test_overlapping_concentrations(self):
        img, concentrations = synthetic_he_image(seed=1, overlap=True)
        f = nmf.image_to_nmf(ut.image_to_matrix(img))
        self.assertTrue(np.allclose(f.W[:, 0], stain_od(HEMATOXYLIN, UNSTAINED), atol=0.08))
        self.assertTrue(np.allclose(f.W[:, 1], stain_od(EOSIN, UNSTAINED), atol=0.08))
        self.assertLess(float(np.abs(f.H - concentrations).mean()), 0.03)

    def test_refined_factorization(self):
        img, _ = synthetic_he_image(seed=2)
        V = ut.image_to_matrix(img)
        seed = nmf.image_to_nmf(V)
        OD = ut.rgb_to_od(V, seed.unstained)
        for mode, error_fn in (('euclidean', nmf.euclidean_error),
                               ('divergence', nmf.kl_divergence_error)):
            f = nmf.image_to_nmf(V, mode=mode, max_iterations=20, lambda_=0)
            self.assertGreaterEqual(float(f.W.min()), 0)
            self.assertGreaterEqual(float(f.H.min()), 0)
            self.assertLessEqual(error_fn(OD, f.W, f.H),
                                 error_fn(OD, seed.W, seed.H) * (1 + 1e-4) + 1e-6)

    def test_all_white_is_insufficient(self):
        V = ut.image_to_matrix(uniform_image(WHITE))
        with self.assertRaises(errors.InsufficientTissueError):
            nmf.image_to_nmf(V)

    def test_single_stain_is_degenerate(self):
        img = uniform_image(WHITE, rows=4, cols=4)
        img[:2] = HEMATOXYLIN
        with self.assertRaises(errors.DegenerateDistinguishersError):
            nmf.image_to_nmf(ut.image_to_matrix(img))

    def test_unknown_mode(self):
        V = ut.image_to_matrix(two_by_two_image())
        with self.assertRaises(ValueError):
            nmf.image_to_nmf(V, mode='cosine')


if __name__ == '__main__':
    unittest.main()
