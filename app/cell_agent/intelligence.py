"""Cellular intelligence service - polls the modem and feeds the geolocation and handover engines"""

import logging
import os
import threading
from enum import Enum
from typing import Callable, List, Optional, Tuple

from cellular.at_parser import classify_signal
from cellular.config_loader import IntelligenceParams
from cellular.errors import CellularError, CommandTimeout, MalformedResponse, ModelLoadFailure
from cellular.modem_controller import ModemController
from cellular.network import (CellTowerMeasurement, NeighborCell, HandoverPrediction,
                              LocationPrediction, SignalQuality)
from cellular.path_loss import estimate_distance_m
from .events import EventBus, EventType
from .handover_predictor import HandoverPredictor
from .rf_locator import RFLocator


DEFAULT_FREQUENCY_MHZ = 1800.0
DRIVE_TEST_REPORT_EVERY = 100


class ServiceState(Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    STOPPED = 'stopped'


class CellularIntelligence:
    """
    Fixed-interval polling orchestrator.

    Each cycle reads engineering-mode data from the modem, updates the current
    signal picture, feeds the handover engine and the fingerprint locator, and
    publishes the changes worth acting on through the event bus.
    """

    def __init__(self, modem: ModemController,
                 locator: Optional[RFLocator] = None,
                 handover: Optional[HandoverPredictor] = None,
                 params: Optional[IntelligenceParams] = None,
                 event_bus: Optional[EventBus] = None,
                 velocity_provider: Optional[Callable[[], float]] = None):
        self.params = params or IntelligenceParams()
        self.modem = modem
        self.locator = locator or RFLocator(k=self.params.k_neighbors,
                                            min_training_points=self.params.min_training_points)
        self.handover = handover or HandoverPredictor(
            sequence_length=self.params.sequence_length,
            num_neighbors=self.params.num_neighbors,
            rsrp_threshold=self.params.rsrp_handover_threshold,
            hysteresis=self.params.rsrp_hysteresis,
            fade_rate_threshold=self.params.fade_rate_threshold,
            horizon_ms=self.params.prediction_horizon_ms
        )
        self.event_bus = event_bus or EventBus()
        self.velocity_provider = velocity_provider

        # Current state
        self.current_measurement: Optional[CellTowerMeasurement] = None
        self.current_neighbors: List[NeighborCell] = []
        self.current_quality: Optional[SignalQuality] = None
        self.last_location: Optional[LocationPrediction] = None
        self.last_handover_prediction: Optional[HandoverPrediction] = None

        self.state = ServiceState.IDLE
        self.cycle_count = 0
        self._stop_event = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None

        self.logger = logging.getLogger('CellularIntelligence')

    @classmethod
    def from_config(cls, params: IntelligenceParams, serial_factory=None, **kwargs):
        """Build the service and its modem channel from loaded configuration"""
        modem = ModemController(
            port=params.port,
            baud_rate=params.baud_rate,
            timeout=params.serial_timeout,
            connect_timeout=params.connect_timeout,
            engineering_timeout=params.engineering_timeout,
            rescan_timeout=params.rescan_timeout,
            serial_factory=serial_factory
        )
        return cls(modem, params=params, **kwargs)

    @property
    def is_running(self) -> bool:
        return self.state == ServiceState.RUNNING

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self):
        """Connect, load configured models and start polling; raises ModemConnectionError"""
        if self.is_running:
            return

        self.logger.info('Starting cellular intelligence service')
        self.modem.connect()
        self.modem.add_unsolicited_handler(self._on_unsolicited)

        try:
            self._load_models()
        except Exception:
            self.modem.remove_unsolicited_handler(self._on_unsolicited)
            self.modem.disconnect()
            raise

        self.event_bus.publish(EventType.CONNECTION_CHANGED,
                               {'connected': True, 'identity': self.modem.identity})

        self._stop_event.clear()
        self._poll_thread = threading.Thread(target=self._poll_loop, name='cellular-poll', daemon=True)
        self.state = ServiceState.RUNNING
        self._poll_thread.start()

        self.logger.info(f'Cellular intelligence active (polling every {self.params.polling_interval_ms}ms)')

    def _load_models(self):
        locator_path = self.params.locator_model_path
        if locator_path and os.path.exists(locator_path):
            try:
                self.locator.load_model(locator_path)
            except ModelLoadFailure as e:
                self.logger.warning(f'Fingerprint table not loaded: {e}')

        handover_path = self.params.handover_model_path
        if handover_path and os.path.exists(handover_path):
            try:
                self.handover.load_model(handover_path)
            except ModelLoadFailure as e:
                self.logger.warning(f'Handover model not loaded, using rule-based prediction: {e}')

    def stop(self):
        """Finish the current cycle, then disconnect"""
        if not self.is_running:
            return

        self._stop_event.set()
        if self._poll_thread is not None and self._poll_thread is not threading.current_thread():
            self._poll_thread.join()
        self._poll_thread = None

        self.modem.remove_unsolicited_handler(self._on_unsolicited)
        self.modem.disconnect()
        self.state = ServiceState.STOPPED

        self.event_bus.publish(EventType.CONNECTION_CHANGED, {'connected': False, 'identity': None})
        self.logger.info(f'Cellular intelligence stopped after {self.cycle_count} cycles')

    def _on_unsolicited(self, line: str):
        self.event_bus.publish(EventType.UNSOLICITED, line)

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    def _poll_loop(self):
        interval_s = self.params.polling_interval_ms / 1000.0

        while not self._stop_event.is_set():
            self.cycle_count += 1
            try:
                self.poll_once()
            except CommandTimeout as e:
                self.logger.warning(f'Cycle {self.cycle_count}: {e}')
            except MalformedResponse as e:
                self.logger.warning(f'Cycle {self.cycle_count}: {e}')
            except Exception:
                self.logger.exception(f'Cycle {self.cycle_count}: poll failed')

            self._stop_event.wait(interval_s)

    def _current_velocity(self) -> float:
        if self.velocity_provider is None:
            return 0.0
        try:
            return float(self.velocity_provider())
        except (TypeError, ValueError) as e:
            self.logger.warning(f'Velocity provider failed, assuming stationary: {e}')
            return 0.0

    def poll_once(self) -> HandoverPrediction:
        """Run one measurement cycle; returns the handover prediction it produced"""
        serving, neighbors = self.modem.get_engineering_mode()

        self.current_measurement = serving
        self.current_neighbors = neighbors

        quality = classify_signal(serving)
        previous_quality = self.current_quality
        self.current_quality = quality
        if previous_quality is None or previous_quality.strength != quality.strength:
            self.event_bus.publish(EventType.QUALITY_CHANGED, quality)

        self.handover.record_measurement(serving, neighbors, velocity_kmh=self._current_velocity())
        self.event_bus.publish(EventType.MEASUREMENT, serving)

        # Handover analysis, edge triggered
        prediction = self.handover.predict()
        previous = self.last_handover_prediction
        if prediction.handover_imminent and (previous is None or not previous.handover_imminent):
            self.logger.warning(f'Handover recommended: {prediction.reason.name}, '
                                f'target cell {prediction.recommended_cell_id}, '
                                f'in {prediction.time_to_handover_ms:.0f}ms')
            self.event_bus.publish(EventType.HANDOVER_RECOMMENDED, prediction)

            if self.params.auto_handover:
                self.execute_handover(prediction)

        self.last_handover_prediction = prediction

        # Location
        if self.locator.is_trained:
            location = self.locator.predict(serving)
            if location.confidence > self.params.location_confidence_threshold:
                self.last_location = location
                self.event_bus.publish(EventType.LOCATION_UPDATED, location)

        return prediction

    # -------------------------------------------------------------------------
    # Handover execution
    # -------------------------------------------------------------------------

    def execute_handover(self, prediction: HandoverPrediction) -> bool:
        """Ask the modem to reselect; real forced handover needs network cooperation"""
        if prediction.recommended_cell_id == 0:
            return False

        self.logger.info(f'Executing handover to cell {prediction.recommended_cell_id}')
        try:
            if self.modem.rescan_network():
                self.logger.info('Handover triggered')
                return True
            self.logger.warning('Network rescan was rejected by the modem')
        except CellularError as e:
            self.logger.error(f'Handover failed: {e}')

        return False

    # -------------------------------------------------------------------------
    # Training data collection
    # -------------------------------------------------------------------------

    def record_training_point(self, latitude: float, longitude: float) -> bool:
        """Pair the current measurement with a ground-truth position"""
        if self.current_measurement is None:
            return False
        self.locator.add_training_point(self.current_measurement, latitude, longitude)
        return True

    def run_drive_test(self, gps_provider: Callable[[], Tuple[float, float]],
                       stop_event: threading.Event, interval_s: float = 1.0) -> int:
        """Collect fingerprints until stop_event is set; returns the number of points recorded"""
        self.logger.info('Drive test started, collecting RF fingerprints')
        point_count = 0

        while not stop_event.is_set():
            try:
                latitude, longitude = gps_provider()
            except Exception as e:
                self.logger.warning(f'GPS error: {e}')
            else:
                if self.record_training_point(latitude, longitude):
                    point_count += 1
                    if point_count % DRIVE_TEST_REPORT_EVERY == 0:
                        self.logger.info(f'Drive test: {point_count} points collected')

            stop_event.wait(interval_s)

        self.logger.info(f'Drive test complete: {point_count} points')
        return point_count

    def train_locator(self, model_path: Optional[str] = None) -> int:
        """
        Train on collected points and persist the table.

        Raises InsufficientTrainingData, leaving the collected points in place.
        """
        self.locator.train()

        path = model_path or self.params.locator_model_path
        if path:
            self.locator.save_model(path)
        return len(self.locator.fingerprints)

    # -------------------------------------------------------------------------
    # Utility
    # -------------------------------------------------------------------------

    def estimate_serving_distance_m(self, frequency_mhz: float = DEFAULT_FREQUENCY_MHZ) -> float:
        """Distance to the serving tower from timing advance, free-space model otherwise"""
        m = self.current_measurement
        if m is None:
            return float('nan')
        if m.timing_advance > 0:
            return m.estimate_distance_m()
        return estimate_distance_m(m.rsrp, frequency_mhz,
                                   tx_power_dbm=self.params.tx_power_dbm,
                                   antenna_gain_db=self.params.antenna_gain_db)

    def get_status_summary(self) -> str:
        if self.current_measurement is None:
            return 'No signal data'

        m = self.current_measurement
        q = self.current_quality or classify_signal(m)

        lines = [
            f'Cell: {m.cell_id} ({m.radio_type})',
            f'RSRP: {m.rsrp:.1f} dBm ({q.strength.name})',
            f'RSRQ: {m.rsrq:.1f} dB',
            f'SINR: {m.sinr:.1f} dB',
            f'Neighbors: {len(self.current_neighbors)}',
            f'Quality Score: {q.score:.0f}/100',
            f'Throughput Est: {q.estimated_throughput_mbps:.0f} Mbps',
            f'Tower Distance Est: {self.estimate_serving_distance_m():.0f} m',
        ]
        if self.last_location is not None:
            loc = self.last_location
            lines.append(f'Location: {loc.latitude:.6f}, {loc.longitude:.6f} '
                         f'(+/-{loc.confidence_radius:.0f} m, confidence {loc.confidence:.2f})')
        return '\n'.join(lines)

    @staticmethod
    def available_modems() -> List[str]:
        return ModemController.list_ports()

