"""Network entities: tower measurements, neighbors, registration and predictions"""

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np


NAN = float('nan')

# LTE timing advance resolution
METERS_PER_TA = 78.12

# Normalization ranges for the fingerprint feature vector
RSRP_RANGE = (-140.0, -44.0)
RSRQ_RANGE = (-20.0, -3.0)
RSSI_RANGE = (-113.0, -51.0)
SINR_RANGE = (-20.0, 30.0)
TA_RANGE = (0.0, 1282.0)

FEATURE_NAMES = ['rsrp', 'rsrq', 'rssi', 'sinr', 'timing_advance',
                 'cell_id_low', 'cell_id_high', 'mcc', 'mnc']


def _normalize(value: float, min_val: float, max_val: float) -> float:
    if value is None or math.isnan(value):
        return 0.0
    return float(np.clip((value - min_val) / (max_val - min_val), 0.0, 1.0))


@dataclass
class CellTowerMeasurement:
    # Identification
    mcc: int = 0
    mnc: int = 0
    cell_id: int = 0
    lac: int = 0  # TAC for LTE
    physical_cell_id: int = 0

    # Signal quality, NaN when the radio reports unknown
    rsrp: float = NAN  # dBm, -140..-44
    rsrq: float = NAN  # dB, -20..-3
    rssi: float = NAN  # dBm
    sinr: float = NAN  # dB

    # Distance metrics
    timing_advance: float = 0.0
    earfcn: int = 0

    # Metadata
    radio_type: str = 'LTE'  # GSM, UMTS, LTE, NR
    is_serving_cell: bool = False
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.timing_advance < 0:
            raise ValueError(f'timing_advance must be >= 0, got {self.timing_advance}')

    def to_normalized_vector(self) -> np.ndarray:
        """Map the measurement to the 9 feature fingerprint vector, each in [0, 1]"""
        cell_id = abs(int(self.cell_id))
        return np.array([
            _normalize(self.rsrp, *RSRP_RANGE),
            _normalize(self.rsrq, *RSRQ_RANGE),
            _normalize(self.rssi, *RSSI_RANGE),
            _normalize(self.sinr, *SINR_RANGE),
            _normalize(self.timing_advance, *TA_RANGE),
            # Cell ID encoded as two modulo features
            (cell_id % 1000) / 1000.0,
            ((cell_id // 1000) % 1000) / 1000.0,
            # Network encoding
            _normalize(self.mcc, 0, 1000),
            _normalize(self.mnc, 0, 1000),
        ], dtype=np.float64)

    def estimate_distance_m(self) -> float:
        """Rough distance to the serving tower from timing advance"""
        return self.timing_advance * METERS_PER_TA


@dataclass
class NeighborCell:
    cell_id: int = 0
    physical_cell_id: int = 0
    rsrp: float = NAN
    rsrq: float = NAN
    earfcn: int = 0

    @property
    def identity(self) -> int:
        # Engineering mode neighbor lines only carry the PCI
        return self.cell_id if self.cell_id else self.physical_cell_id


@dataclass(frozen=True)
class Fingerprint:
    features: tuple
    latitude: float
    longitude: float
    cell_id: int


@dataclass
class TrainingPoint:
    measurement: CellTowerMeasurement
    latitude: float
    longitude: float


@dataclass
class LocationPrediction:
    latitude: float = NAN
    longitude: float = NAN
    confidence_radius: float = 0.0  # uncertainty in meters
    confidence: float = 0.0
    method: str = 'RF_FINGERPRINT'


class HandoverReason(Enum):
    NONE = 'none'
    SIGNAL_DEGRADING = 'signal_degrading'
    NEIGHBOR_STRONGER = 'neighbor_stronger'
    LOAD_BALANCING = 'load_balancing'
    COVERAGE_HOLE = 'coverage_hole'
    VELOCITY_BASED = 'velocity_based'


@dataclass
class HandoverPrediction:
    handover_imminent: bool = False
    time_to_handover_ms: float = 0.0
    recommended_cell_id: int = 0
    target_cell_rsrp: float = NAN
    current_cell_rsrp: float = NAN
    reason: HandoverReason = HandoverReason.NONE


class SignalStrength(Enum):
    EXCELLENT = 'excellent'  # RSRP >= -80 dBm
    GOOD = 'good'            # -80 to -90 dBm
    FAIR = 'fair'            # -90 to -100 dBm
    POOR = 'poor'            # -100 to -110 dBm
    NO_SIGNAL = 'no_signal'  # < -110 dBm


@dataclass
class SignalQuality:
    strength: SignalStrength = SignalStrength.NO_SIGNAL
    score: float = 0.0  # 0-100
    description: str = ''
    sufficient_for_data: bool = False
    sufficient_for_voice: bool = False
    estimated_throughput_mbps: float = 0.0


@dataclass
class NetworkRegistration:
    status: int = 0
    lac: int = 0
    cell_id: int = 0
    registered: bool = False
    roaming: bool = False
    searching: bool = False
    technology: str = 'Unknown'


@dataclass
class BandInfo:
    band_number: int
    technology: str
    frequency_mhz: int
    bandwidth_mhz: int

    @property
    def is_known(self) -> bool:
        return self.frequency_mhz > 0


@dataclass
class ModemIdentity:
    manufacturer: str = ''
    model: str = ''
    firmware_version: str = ''
    port: Optional[str] = None
