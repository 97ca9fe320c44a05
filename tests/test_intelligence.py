import math
import os
import tempfile
import threading
import unittest

from cellular.config_loader import IntelligenceParams
from cellular.errors import CommandTimeout, InsufficientTrainingData, MalformedResponse, ModemConnectionError
from cellular.network import CellTowerMeasurement, ModemIdentity, NeighborCell, SignalStrength
from cell_agent.events import EventType
from cell_agent.intelligence import CellularIntelligence, ServiceState
from cell_agent.rf_locator import RFLocator


def sample(serving_rsrp, neighbor_rsrp=None, cell_id=0x1A2B3C4):
    serving = CellTowerMeasurement(mcc=310, mnc=260, cell_id=cell_id, rsrp=serving_rsrp, rsrq=-10.0,
                                   sinr=10.0, timing_advance=8.0, is_serving_cell=True)
    neighbors = []
    if neighbor_rsrp is not None:
        neighbors.append(NeighborCell(physical_cell_id=201, rsrp=neighbor_rsrp, rsrq=-11.0, earfcn=5110))
    return serving, neighbors


class StubModem:
    """Stands in for ModemController, replaying scripted engineering-mode results"""

    def __init__(self, script=None, connect_error=None, rescan_result=True):
        self.script = list(script or [])
        self.connect_error = connect_error
        self.rescan_result = rescan_result
        self.identity = ModemIdentity('Quectel', 'EC25', 'EC25EFAR06A06M4G', '/dev/fake')
        self.handlers = []
        self.connected = False
        self.rescans = 0
        self.polled = threading.Event()
        self.calls = 0

    def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def disconnect(self):
        self.connected = False

    def add_unsolicited_handler(self, handler):
        self.handlers.append(handler)

    def remove_unsolicited_handler(self, handler):
        self.handlers.remove(handler)

    def get_engineering_mode(self):
        self.calls += 1
        if len(self.script) > 1:
            item = self.script.pop(0)
        else:
            # Last scripted item repeats
            item = self.script[0]
            self.polled.set()
        if isinstance(item, Exception):
            raise item
        return item

    def rescan_network(self):
        self.rescans += 1
        if isinstance(self.rescan_result, Exception):
            raise self.rescan_result
        return self.rescan_result


class Recorder:
    def __init__(self, bus, *event_types):
        self.events = {t: [] for t in event_types}
        for t in event_types:
            bus.subscribe(t, self._record)

    def _record(self, event):
        self.events[event.type].append(event.payload)


class TestPollCycle(unittest.TestCase):

    def make_service(self, script, **params):
        self.modem = StubModem(script)
        service = CellularIntelligence(self.modem, params=IntelligenceParams(**params))
        self.recorder = Recorder(service.event_bus, *EventType)
        return service

    def test_measurement_and_quality_events(self):
        service = self.make_service([sample(-85.0), sample(-86.0), sample(-95.0)])
        for _ in range(3):
            service.poll_once()

        self.assertEqual(len(self.recorder.events[EventType.MEASUREMENT]), 3)
        strengths = [q.strength for q in self.recorder.events[EventType.QUALITY_CHANGED]]
        self.assertEqual(strengths, [SignalStrength.GOOD, SignalStrength.FAIR])
        self.assertEqual(service.current_measurement.rsrp, -95.0)

    def test_handover_event_is_edge_triggered(self):
        script = [sample(-95.0, -100.0)] * 5 + [sample(-95.0, -88.0)] * 4 + [sample(-95.0, -100.0)] * 2 \
            + [sample(-95.0, -88.0)]
        service = self.make_service(script)
        for _ in range(len(script)):
            service.poll_once()

        recommended = self.recorder.events[EventType.HANDOVER_RECOMMENDED]
        self.assertEqual(len(recommended), 2)
        self.assertEqual(recommended[0].recommended_cell_id, 201)
        self.assertTrue(service.last_handover_prediction.handover_imminent)

    def test_auto_handover_triggers_rescan(self):
        script = [sample(-95.0, -88.0)] * 7
        service = self.make_service(script, auto_handover=True)
        for _ in range(len(script)):
            service.poll_once()
        self.assertEqual(self.modem.rescans, 1)

    def test_no_rescan_without_auto_handover(self):
        script = [sample(-95.0, -88.0)] * 7
        service = self.make_service(script)
        for _ in range(len(script)):
            service.poll_once()
        self.assertEqual(self.modem.rescans, 0)

    def test_location_published_above_confidence_threshold(self):
        script = [sample(-80.0 - i) for i in range(12)]
        service = self.make_service(script)
        for lat_offset in range(12):
            service.poll_once()
            service.record_training_point(37.0 + lat_offset * 0.001, -122.0)
        service.train_locator()

        self.modem.script = [sample(-85.0)]
        service.poll_once()
        locations = self.recorder.events[EventType.LOCATION_UPDATED]
        self.assertEqual(len(locations), 1)
        self.assertGreater(locations[0].confidence, 0.3)
        self.assertIs(service.last_location, locations[0])

    def test_low_confidence_location_not_published(self):
        service = self.make_service([sample(-85.0)], location_confidence_threshold=1.0)
        for i in range(10):
            service.locator.add_training_point(sample(-85.0 - i)[0], 37.0, -122.0)
        service.locator.train()

        service.poll_once()
        self.assertEqual(self.recorder.events[EventType.LOCATION_UPDATED], [])
        self.assertIsNone(service.last_location)

    def test_velocity_provider_feeds_snapshots(self):
        service = self.make_service([sample(-85.0)])
        service.velocity_provider = lambda: 72.0
        service.poll_once()
        self.assertEqual(service.handover.buffer.current.velocity_kmh, 72.0)


class TestLifecycle(unittest.TestCase):

    def test_start_and_stop(self):
        modem = StubModem([sample(-85.0)])
        service = CellularIntelligence(modem, params=IntelligenceParams(polling_interval_ms=10))
        recorder = Recorder(service.event_bus, EventType.CONNECTION_CHANGED, EventType.UNSOLICITED)

        service.start()
        self.assertEqual(service.state, ServiceState.RUNNING)
        self.assertTrue(modem.polled.wait(2.0))

        modem.handlers[0]('+CEREG: 1,"2B7F","01A2B3C4",7')
        service.stop()

        self.assertEqual(service.state, ServiceState.STOPPED)
        self.assertFalse(modem.connected)
        self.assertEqual(modem.handlers, [])
        self.assertEqual([p['connected'] for p in recorder.events[EventType.CONNECTION_CHANGED]], [True, False])
        self.assertEqual(recorder.events[EventType.UNSOLICITED], ['+CEREG: 1,"2B7F","01A2B3C4",7'])
        self.assertGreaterEqual(service.cycle_count, 1)

    def test_loop_survives_cycle_errors(self):
        script = [CommandTimeout('AT+QENG="servingcell"', 0.1), MalformedResponse('+QENG', 'garbage'),
                  KeyError('unexpected'), sample(-85.0)]
        modem = StubModem(script)
        service = CellularIntelligence(modem, params=IntelligenceParams(polling_interval_ms=10))

        with self.assertLogs('CellularIntelligence', level='WARNING'):
            service.start()
            self.assertTrue(modem.polled.wait(2.0))
            service.stop()

        self.assertGreaterEqual(modem.calls, 4)
        self.assertEqual(service.current_measurement.rsrp, -85.0)

    def test_connection_failure_propagates(self):
        modem = StubModem([sample(-85.0)], connect_error=ModemConnectionError('no modem'))
        service = CellularIntelligence(modem)
        with self.assertRaises(ModemConnectionError):
            service.start()
        self.assertEqual(service.state, ServiceState.IDLE)

    def test_corrupt_models_are_not_fatal(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            locator_path = os.path.join(tmpdir, 'rf_locator.csv')
            handover_path = os.path.join(tmpdir, 'handover_net.pt')
            with open(locator_path, 'w') as f:
                f.write('garbage\n')
            with open(handover_path, 'wb') as f:
                f.write(b'garbage')

            modem = StubModem([sample(-85.0)])
            params = IntelligenceParams(polling_interval_ms=10, locator_model_path=locator_path,
                                        handover_model_path=handover_path)
            service = CellularIntelligence(modem, params=params)
            service.start()
            service.stop()

        self.assertFalse(service.locator.is_trained)
        self.assertFalse(service.handover.is_model_loaded)

    def test_binary_fingerprint_table_is_not_fatal(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            locator_path = os.path.join(tmpdir, 'rf_locator.csv')
            with open(locator_path, 'wb') as f:
                f.write(b'\xff\xfe\x00\x81garbage\x00\n')

            modem = StubModem([sample(-85.0)])
            params = IntelligenceParams(polling_interval_ms=10, locator_model_path=locator_path)
            service = CellularIntelligence(modem, params=params)
            with self.assertLogs('CellularIntelligence', level='WARNING'):
                service.start()
            self.assertEqual(service.state, ServiceState.RUNNING)
            service.stop()

        self.assertFalse(service.locator.is_trained)
        self.assertFalse(modem.connected)

    def test_start_failure_after_connect_releases_modem(self):
        class BrokenLocator(RFLocator):
            def load_model(self, path):
                raise RuntimeError('disk gone')

        with tempfile.TemporaryDirectory() as tmpdir:
            locator_path = os.path.join(tmpdir, 'rf_locator.csv')
            with open(locator_path, 'w') as f:
                f.write('features,latitude,longitude,cell_id\n')

            modem = StubModem([sample(-85.0)])
            params = IntelligenceParams(polling_interval_ms=10, locator_model_path=locator_path)
            service = CellularIntelligence(modem, locator=BrokenLocator(), params=params)
            with self.assertRaises(RuntimeError):
                service.start()

        self.assertEqual(service.state, ServiceState.IDLE)
        self.assertFalse(modem.connected)
        self.assertEqual(modem.handlers, [])


class TestOperations(unittest.TestCase):

    def setUp(self):
        self.modem = StubModem([sample(-85.0)])
        self.service = CellularIntelligence(self.modem)

    def test_execute_handover(self):
        prediction = self.service.handover.predict()
        self.assertFalse(self.service.execute_handover(prediction))

        prediction.recommended_cell_id = 201
        self.assertTrue(self.service.execute_handover(prediction))

        self.modem.rescan_result = CommandTimeout('AT+COPS=0', 60.0)
        self.assertFalse(self.service.execute_handover(prediction))
        self.assertEqual(self.modem.rescans, 2)

    def test_record_training_point_needs_measurement(self):
        self.assertFalse(self.service.record_training_point(37.0, -122.0))
        self.service.poll_once()
        self.assertTrue(self.service.record_training_point(37.0, -122.0))
        self.assertEqual(self.service.locator.pending_count, 1)

    def test_drive_test(self):
        self.service.poll_once()
        stop = threading.Event()
        fixes = [(37.0, -122.0), RuntimeError('no fix'), (37.001, -122.0), (37.002, -122.0)]

        def gps():
            fix = fixes.pop(0)
            if not fixes:
                stop.set()
            if isinstance(fix, Exception):
                raise fix
            return fix

        count = self.service.run_drive_test(gps, stop, interval_s=0)
        self.assertEqual(count, 3)
        self.assertEqual(self.service.locator.pending_count, 3)

    def test_train_locator_saves_table(self):
        self.service.poll_once()
        self.service.record_training_point(36.999, -122.0)
        with self.assertRaises(InsufficientTrainingData) as ctx:
            self.service.train_locator()
        self.assertEqual((ctx.exception.available, ctx.exception.required), (1, 10))
        self.assertEqual(self.service.locator.pending_count, 1)
        self.assertFalse(self.service.locator.is_trained)

        for i in range(10):
            self.service.record_training_point(37.0 + i * 0.001, -122.0)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'rf_locator.csv')
            self.assertEqual(self.service.train_locator(path), 11)
            self.assertTrue(os.path.isfile(path))

    def test_status_summary(self):
        self.assertEqual(self.service.get_status_summary(), 'No signal data')
        self.service.poll_once()
        summary = self.service.get_status_summary()
        self.assertIn('RSRP: -85.0 dBm (GOOD)', summary)
        self.assertIn('Neighbors: 0', summary)
        # Timing advance 8 -> 625 m
        self.assertIn('Tower Distance Est: 625 m', summary)

    def test_distance_falls_back_to_path_loss(self):
        serving, _ = sample(-85.0)
        serving.timing_advance = 0.0
        self.service.current_measurement = serving
        distance = self.service.estimate_serving_distance_m()
        self.assertFalse(math.isnan(distance))
        self.assertGreater(distance, 1.0)

    def test_from_config(self):
        params = IntelligenceParams(port='/dev/ttyUSB3', baud_rate=9600)
        service = CellularIntelligence.from_config(params)
        self.assertEqual(service.modem.port, '/dev/ttyUSB3')
        self.assertEqual(service.modem.baud_rate, 9600)
        self.assertEqual(service.handover.sequence_length, params.sequence_length)


if __name__ == '__main__':
    unittest.main()
