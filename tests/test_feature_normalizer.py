import math
import unittest

import numpy as np

from cellular.network import CellTowerMeasurement
from cell_agent.feature_normalizer import FeatureNormalizer
from cell_agent.snapshot_buffer import SignalSnapshot


def snapshot(serving_rsrp=-90.0, neighbors=(-100.0, -110.0), velocity=50.0):
    return SignalSnapshot(timestamp=0.0, serving_rsrp=serving_rsrp, serving_rsrq=-11.5, serving_sinr=5.0,
                          serving_cell_id=1, neighbor_rsrps=tuple(neighbors),
                          neighbor_cell_ids=tuple(range(len(neighbors))), velocity_kmh=velocity)


class TestFeatureNormalizer(unittest.TestCase):

    def setUp(self):
        self.normalizer = FeatureNormalizer(num_neighbors=6)

    def test_layout(self):
        vector = self.normalizer.normalize_snapshot(snapshot())
        self.assertEqual(self.normalizer.feature_dim, 10)
        self.assertEqual(vector.dtype, np.float32)
        np.testing.assert_allclose(vector, [0.5, 0.5, 0.5, 0.4, 0.3, 0, 0, 0, 0, 0.25], atol=1e-6)

    def test_nan_and_out_of_range(self):
        vector = self.normalizer.normalize_snapshot(snapshot(serving_rsrp=float('nan'),
                                                             neighbors=(-20.0,), velocity=500.0))
        self.assertEqual(vector[0], 0.0)
        self.assertEqual(vector[3], 1.0)
        self.assertEqual(vector[-1], 1.0)

    def test_extra_neighbors_are_dropped(self):
        vector = FeatureNormalizer(num_neighbors=2).normalize_snapshot(snapshot(neighbors=(-90, -95, -100)))
        self.assertEqual(len(vector), 6)

    def test_sequence_shape(self):
        sequence = self.normalizer.normalize_sequence([snapshot()] * 4)
        self.assertEqual(sequence.shape, (4, 10))
        self.assertEqual(self.normalizer.normalize_sequence([]).shape, (0, 10))


class TestMeasurementVector(unittest.TestCase):

    def test_fingerprint_vector(self):
        m = CellTowerMeasurement(mcc=310, mnc=260, cell_id=12345678, rsrp=-92.0, rsrq=-11.5,
                                 rssi=-82.0, sinr=5.0, timing_advance=641.0)
        vector = m.to_normalized_vector()
        self.assertEqual(len(vector), 9)
        np.testing.assert_allclose(vector, [0.5, 0.5, 0.5, 0.5, 0.5, 0.678, 0.345, 0.31, 0.26])

    def test_values_clamp_and_nan_maps_to_zero(self):
        vector = CellTowerMeasurement(rsrp=-30.0, sinr=-50.0).to_normalized_vector()
        self.assertEqual(vector[0], 1.0)
        self.assertEqual(vector[1], 0.0)
        self.assertEqual(vector[3], 0.0)
        self.assertTrue(np.all((vector >= 0) & (vector <= 1)))

    def test_negative_timing_advance_rejected(self):
        with self.assertRaises(ValueError):
            CellTowerMeasurement(timing_advance=-1.0)

    def test_distance_from_timing_advance(self):
        self.assertTrue(math.isclose(CellTowerMeasurement(timing_advance=10).estimate_distance_m(), 781.2))


if __name__ == '__main__':
    unittest.main()
