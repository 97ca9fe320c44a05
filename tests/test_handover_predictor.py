import os
import tempfile
import unittest

import torch

from cellular.errors import ModelLoadFailure
from cellular.network import CellTowerMeasurement, NeighborCell, HandoverReason
from cell_agent.handover_predictor import HandoverPredictor, calculate_fade_rate
from cell_agent.models import HandoverNet, save_handover_model


def serving(rsrp, cell_id=0x1A2B3C4):
    return CellTowerMeasurement(mcc=310, mnc=260, cell_id=cell_id, rsrp=rsrp, rsrq=-10.0, sinr=10.0,
                                is_serving_cell=True)


def neighbor(pci, rsrp):
    return NeighborCell(physical_cell_id=pci, rsrp=rsrp, rsrq=-12.0, earfcn=5110)


def feed(predictor, serving_rsrps, neighbor_rsrps=None, interval_s=1.0, velocity_kmh=0.0, pci=201):
    """Record a series of samples; neighbor_rsrps may be a constant or a per-sample list"""
    for i, rsrp in enumerate(serving_rsrps):
        neighbors = []
        if neighbor_rsrps is not None:
            n_rsrp = neighbor_rsrps[i] if isinstance(neighbor_rsrps, (list, tuple)) else neighbor_rsrps
            neighbors.append(neighbor(pci, n_rsrp))
        predictor.record_measurement(serving(rsrp), neighbors, velocity_kmh=velocity_kmh,
                                     timestamp=1000.0 + i * interval_s)


class TestHistory(unittest.TestCase):

    def test_buffer_evicts_past_twice_sequence_length(self):
        predictor = HandoverPredictor(sequence_length=5)
        feed(predictor, [-90.0] * 15)
        self.assertEqual(len(predictor.buffer), 10)
        self.assertEqual(predictor.buffer.latest(10)[0].timestamp, 1005.0)

    def test_neighbors_sorted_and_truncated(self):
        predictor = HandoverPredictor(num_neighbors=2)
        predictor.record_measurement(serving(-90.0),
                                     [neighbor(1, -100.0), neighbor(2, -85.0), neighbor(3, -95.0)])
        snapshot = predictor.buffer.current
        self.assertEqual(snapshot.neighbor_cell_ids, (2, 3))
        self.assertEqual(snapshot.neighbor_rsrps, (-85.0, -95.0))

    def test_fade_rate_is_regression_slope(self):
        predictor = HandoverPredictor()
        feed(predictor, [-80.0 - 3.0 * i for i in range(10)])
        self.assertAlmostEqual(calculate_fade_rate(predictor.buffer.latest(10)), -3.0)

    def test_fade_rate_uses_elapsed_seconds(self):
        predictor = HandoverPredictor()
        feed(predictor, [-80.0 - 1.5 * i for i in range(10)], interval_s=0.5)
        self.assertAlmostEqual(calculate_fade_rate(predictor.buffer.latest(10)), -3.0)

    def test_fade_rate_with_identical_timestamps(self):
        predictor = HandoverPredictor()
        for rsrp in (-80.0, -90.0, -100.0):
            predictor.record_measurement(serving(rsrp), [], timestamp=5.0)
        self.assertEqual(calculate_fade_rate(predictor.buffer.latest(10)), 0.0)


class TestRuleBased(unittest.TestCase):

    def setUp(self):
        self.predictor = HandoverPredictor()

    def test_needs_five_snapshots(self):
        feed(self.predictor, [-95.0] * 4, neighbor_rsrps=-80.0)
        self.assertFalse(self.predictor.predict_rule_based().handover_imminent)

    def test_below_threshold_with_usable_neighbor(self):
        feed(self.predictor, [-112.0] * 5, neighbor_rsrps=-105.0)
        prediction = self.predictor.predict_rule_based()
        self.assertTrue(prediction.handover_imminent)
        self.assertEqual(prediction.reason, HandoverReason.SIGNAL_DEGRADING)
        self.assertEqual(prediction.time_to_handover_ms, 0.0)
        self.assertEqual(prediction.recommended_cell_id, 201)
        self.assertEqual(prediction.target_cell_rsrp, -105.0)
        self.assertEqual(prediction.current_cell_rsrp, -112.0)

    def test_below_threshold_without_usable_neighbor(self):
        feed(self.predictor, [-112.0] * 5, neighbor_rsrps=-118.0)
        self.assertFalse(self.predictor.predict_rule_based().handover_imminent)

    def test_fast_fade_predicts_time_to_threshold(self):
        # 3 dB/s fade, last sample -103.5 dBm
        feed(self.predictor, [-90.0 - 1.5 * i for i in range(10)], neighbor_rsrps=-100.0, interval_s=0.5)
        prediction = self.predictor.predict_rule_based()
        self.assertTrue(prediction.handover_imminent)
        self.assertEqual(prediction.reason, HandoverReason.SIGNAL_DEGRADING)
        self.assertAlmostEqual(prediction.time_to_handover_ms, 6.5 / 3.0 * 1000, places=3)
        self.assertEqual(prediction.recommended_cell_id, 201)

    def test_fade_of_three_db_per_one_second_sample(self):
        feed(self.predictor, [-75.0 - 3.0 * i for i in range(10)], neighbor_rsrps=-105.0)
        prediction = self.predictor.predict_rule_based()
        self.assertTrue(prediction.handover_imminent)
        self.assertEqual(prediction.reason, HandoverReason.SIGNAL_DEGRADING)
        self.assertLess(prediction.time_to_handover_ms, 5000.0)
        self.assertAlmostEqual(prediction.time_to_handover_ms, 8.0 / 3.0 * 1000, places=3)

    def test_slow_fade_outside_horizon(self):
        # 3 dB/s fade but 7.5 s from threshold, neighbor weaker than serving
        feed(self.predictor, [-74.0 - 1.5 * i for i in range(10)], neighbor_rsrps=-100.0, interval_s=0.5)
        self.assertFalse(self.predictor.predict_rule_based().handover_imminent)

    def test_stronger_neighbor(self):
        feed(self.predictor, [-95.0] * 6, neighbor_rsrps=-90.0)
        prediction = self.predictor.predict_rule_based()
        self.assertTrue(prediction.handover_imminent)
        self.assertEqual(prediction.reason, HandoverReason.NEIGHBOR_STRONGER)
        self.assertEqual(prediction.time_to_handover_ms, 1000.0)
        self.assertEqual(prediction.recommended_cell_id, 201)

    def test_neighbor_within_hysteresis(self):
        feed(self.predictor, [-95.0] * 6, neighbor_rsrps=-93.0)
        self.assertFalse(self.predictor.predict_rule_based().handover_imminent)

    def test_velocity_rule(self):
        rising = [-101.0 + i for i in range(10)]
        feed(self.predictor, [-90.0] * 10, neighbor_rsrps=rising, interval_s=0.5, velocity_kmh=80.0)
        prediction = self.predictor.predict_rule_based()
        self.assertTrue(prediction.handover_imminent)
        self.assertEqual(prediction.reason, HandoverReason.VELOCITY_BASED)
        # 5 dB to close at 2 dB/s
        self.assertAlmostEqual(prediction.time_to_handover_ms, 2500.0)
        self.assertEqual(prediction.target_cell_rsrp, -92.0)

    def test_velocity_rule_needs_speed(self):
        rising = [-101.0 + i for i in range(10)]
        feed(self.predictor, [-90.0] * 10, neighbor_rsrps=rising, interval_s=0.5, velocity_kmh=30.0)
        self.assertFalse(self.predictor.predict_rule_based().handover_imminent)

    def test_steady_signal_no_handover(self):
        feed(self.predictor, [-85.0] * 20, neighbor_rsrps=-100.0)
        prediction = self.predictor.predict()
        self.assertFalse(prediction.handover_imminent)
        self.assertEqual(prediction.reason, HandoverReason.NONE)
        self.assertEqual(prediction.current_cell_rsrp, -85.0)


class StubModel:
    def __init__(self, output):
        self.output = torch.tensor([output], dtype=torch.float32)
        self.inputs = []

    def __call__(self, x):
        self.inputs.append(x)
        return self.output


class TestModelStrategy(unittest.TestCase):

    def setUp(self):
        self.predictor = HandoverPredictor(sequence_length=5)

    def record_two_neighbors(self, count, serving_rsrp=-95.0):
        for i in range(count):
            self.predictor.record_measurement(serving(serving_rsrp), [neighbor(201, -97.0), neighbor(305, -99.0)],
                                              velocity_kmh=40.0, timestamp=float(i))

    def test_model_output_drives_prediction(self):
        model = StubModel([0.9, 0.5, 1.0])
        self.predictor.set_model(model)
        self.record_two_neighbors(5)

        prediction = self.predictor.predict()
        self.assertTrue(prediction.handover_imminent)
        self.assertEqual(prediction.reason, HandoverReason.SIGNAL_DEGRADING)
        self.assertAlmostEqual(prediction.time_to_handover_ms, 2500.0)
        self.assertEqual(prediction.recommended_cell_id, 305)
        self.assertEqual(tuple(model.inputs[0].shape), (1, 5, 10))
        self.assertTrue(torch.all((model.inputs[0] >= 0) & (model.inputs[0] <= 1)))

    def test_model_sees_only_latest_sequence_after_eviction(self):
        model = StubModel([0.2, 0.5, 0.0])
        self.predictor.set_model(model)
        for i in range(13):
            self.predictor.record_measurement(serving(-80.0 - i), [neighbor(201, -97.0)], timestamp=float(i))

        self.assertEqual(len(self.predictor.buffer), 10)
        self.assertEqual(self.predictor.buffer.memory[0].timestamp, 3.0)

        self.predictor.predict()
        fed = model.inputs[0]
        self.assertEqual(tuple(fed.shape), (1, 5, 10))
        expected = self.predictor.build_input_tensor(self.predictor.buffer.latest(5))
        self.assertTrue(torch.equal(fed, expected))
        # Serving RSRP column runs -88 .. -92 dBm, oldest first
        serving_column = [round(v, 4) for v in fed[0, :, 0].tolist()]
        self.assertEqual(serving_column, [0.52, 0.51, 0.5, 0.49, 0.48])

    def test_neighbor_index_rounds_to_nearest_slot(self):
        self.predictor.set_model(StubModel([0.9, 0.5, 0.6]))
        self.record_two_neighbors(5)
        self.assertEqual(self.predictor.predict().recommended_cell_id, 305)

    def test_low_probability_overrides_rules(self):
        self.predictor.set_model(StubModel([0.2, 0.5, 0.0]))
        for i in range(5):
            self.predictor.record_measurement(serving(-95.0), [neighbor(201, -80.0)], timestamp=float(i))
        self.assertTrue(self.predictor.predict_rule_based().handover_imminent)
        self.assertFalse(self.predictor.predict().handover_imminent)

    def test_short_history_uses_rules(self):
        model = StubModel([0.9, 0.5, 0.0])
        self.predictor.set_model(model)
        self.record_two_neighbors(4)
        self.assertFalse(self.predictor.predict().handover_imminent)
        self.assertEqual(model.inputs, [])

    def test_failing_model_falls_back_to_rules(self):
        def broken(x):
            raise RuntimeError('shape mismatch')

        self.predictor.set_model(broken)
        for i in range(5):
            self.predictor.record_measurement(serving(-95.0), [neighbor(201, -80.0)], timestamp=float(i))
        prediction = self.predictor.predict()
        self.assertEqual(prediction.reason, HandoverReason.NEIGHBOR_STRONGER)

    def test_set_model_requires_callable(self):
        with self.assertRaises(TypeError):
            self.predictor.set_model(42)


class TestModelLoading(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.predictor = HandoverPredictor(sequence_length=5, num_neighbors=6)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_checkpoint_round_trip(self):
        path = os.path.join(self.tmpdir.name, 'handover_net.pt')
        save_handover_model(HandoverNet(input_dim=10, num_neighbors=6, hidden_dim=32, gru_hidden_dim=16),
                            path, sequence_length=5)

        self.predictor.load_model(path)
        self.assertTrue(self.predictor.is_model_loaded)

        for i in range(5):
            self.predictor.record_measurement(serving(-95.0), [neighbor(201, -97.0)], timestamp=float(i))
        prediction = self.predictor.predict()
        self.assertIn(prediction.reason, (HandoverReason.NONE, HandoverReason.SIGNAL_DEGRADING))

    def test_network_output_ranges(self):
        net = HandoverNet(input_dim=10, num_neighbors=6)
        out = net(torch.rand(3, 5, 10))
        self.assertEqual(tuple(out.shape), (3, 3))
        self.assertTrue(torch.all((out[:, :2] >= 0) & (out[:, :2] <= 1)))
        self.assertTrue(torch.all((out[:, 2] >= 0) & (out[:, 2] <= 5)))

    def test_layout_mismatch_raises(self):
        path = os.path.join(self.tmpdir.name, 'small.pt')
        save_handover_model(HandoverNet(input_dim=8, num_neighbors=4), path, sequence_length=5)
        with self.assertRaises(ModelLoadFailure):
            self.predictor.load_model(path)
        self.assertFalse(self.predictor.is_model_loaded)

    def test_missing_file_raises(self):
        with self.assertRaises(ModelLoadFailure):
            self.predictor.load_model(os.path.join(self.tmpdir.name, 'absent.pt'))

    def test_corrupt_file_raises(self):
        path = os.path.join(self.tmpdir.name, 'corrupt.pt')
        with open(path, 'wb') as f:
            f.write(b'not a checkpoint')
        with self.assertRaises(ModelLoadFailure):
            self.predictor.load_model(path)


if __name__ == '__main__':
    unittest.main()
