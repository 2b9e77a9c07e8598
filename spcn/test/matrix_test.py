import unittest

import numpy as np
import spcn
import spcn.norm.utils as ut


class TestColorMatrix(unittest.TestCase):

    @classmethod
    def setUpClass(cls) -> None:
        cls._orig_logging_level = spcn.getLoggingLevel()  # type: ignore
        spcn.setLoggingLevel(40)

    @classmethod
    def tearDownClass(cls) -> None:
        spcn.setLoggingLevel(cls._orig_logging_level)  # type: ignore
        return super().tearDownClass()

    def test_image_to_matrix_row_major(self):
        img = np.arange(2 * 3 * 3, dtype=np.uint8).reshape((2, 3, 3))
        V = ut.image_to_matrix(img)
        self.assertEqual(V.shape, (3, 6))
        self.assertEqual(V.dtype, ut.CALC_DTYPE)
        # Column r * cols + c holds pixel (r, c).
        self.assertTrue(np.array_equal(V[:, 4], img[1, 1].astype(np.float32)))
        self.assertTrue(np.array_equal(V[:, 2], img[0, 2].astype(np.float32)))

    def test_matrix_to_image_inverts(self):
        img = np.random.RandomState(1).randint(0, 256, (4, 5, 3)).astype(np.uint8)
        V = ut.image_to_matrix(img)
        back = ut.from_calc_scale(ut.matrix_to_image(V, img.shape), np.uint8)
        self.assertTrue(np.array_equal(back, img))

    def test_channel_mismatch(self):
        with self.assertRaises(ValueError):
            ut.image_to_matrix(np.zeros((4, 4, 4), dtype=np.uint8), channels=3)
        with self.assertRaises(ValueError):
            ut.image_to_matrix(np.zeros((4, 4), dtype=np.uint8), channels=3)
        with self.assertRaises(ValueError):
            ut.image_to_matrix(np.zeros((4, 4), dtype=np.uint8), channels=1)

    def test_empty_image(self):
        V = ut.image_to_matrix(np.zeros((0, 0, 3), dtype=np.uint8))
        self.assertEqual(V.shape, (3, 0))

    def test_calc_scale(self):
        img16 = np.array([[[0, 65535, 32768]]], dtype=np.uint16)
        V = ut.to_calc_scale(img16)
        self.assertAlmostEqual(float(V.max()), 255.0, places=3)
        self.assertEqual(float(V.min()), 0.0)
        imgf = np.array([[[0.0, 1.0, 0.5]]], dtype=np.float32)
        self.assertTrue(np.allclose(ut.to_calc_scale(imgf), [[[0, 255, 127.5]]]))
        back = ut.from_calc_scale(ut.to_calc_scale(img16), np.uint16)
        self.assertTrue(np.array_equal(back, img16))

    def test_from_calc_scale_clips(self):
        out = ut.from_calc_scale(np.array([-5.0, 300.0, 127.6]), np.uint8)
        self.assertTrue(np.array_equal(out, [0, 255, 128]))

    def test_unsupported_dtype(self):
        with self.assertRaises(ValueError):
            ut.pixel_max(np.complex64)

    def test_optical_density(self):
        unstained = np.array([240, 238, 242], dtype=np.float32)
        V = np.array([[70, 240, 250], [50, 238, 250], [150, 242, 250]],
                     dtype=np.float32)
        OD = ut.rgb_to_od(V, unstained)
        self.assertTrue(np.all(OD >= 0))
        # Unstained color and brighter colors have no density.
        self.assertTrue(np.allclose(OD[:, 1:], 0))
        self.assertTrue(np.allclose(ut.od_to_rgb(OD[:, :1], unstained),
                                    V[:, :1], atol=1e-3))

    def test_count_differing_pixels(self):
        a = np.zeros((4, 4, 3), dtype=np.uint8)
        b = a.copy()
        b[0, 0, 1] = 1
        b[1, 1, 2] = 5
        b[2, 2] = (9, 9, 9)
        self.assertEqual(ut.count_differing_pixels(a, b), 2)
        self.assertEqual(ut.count_differing_pixels(a, b, tolerance=0), 3)
        self.assertEqual(ut.count_differing_pixels(a, b, tolerance=10), 0)
        with self.assertRaises(ValueError):
            ut.count_differing_pixels(a, b[:2])


if __name__ == '__main__':
    unittest.main()
