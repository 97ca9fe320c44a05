"""Cellular modem access - AT channel, response decoding and network entities"""

from .errors import (CellularError, ModemConnectionError, CommandTimeout, MalformedResponse,
                     InsufficientTrainingData, ModelLoadFailure)
from .network import (CellTowerMeasurement, NeighborCell, Fingerprint, TrainingPoint,
                      LocationPrediction, HandoverPrediction, HandoverReason,
                      SignalQuality, SignalStrength, NetworkRegistration, BandInfo, ModemIdentity)
from .modem_controller import ModemController
from .config_loader import IntelligenceParams, load_config, setup_logging

__all__ = [
    'CellularError', 'ModemConnectionError', 'CommandTimeout', 'MalformedResponse',
    'InsufficientTrainingData', 'ModelLoadFailure',
    'CellTowerMeasurement', 'NeighborCell', 'Fingerprint', 'TrainingPoint',
    'LocationPrediction', 'HandoverPrediction', 'HandoverReason',
    'SignalQuality', 'SignalStrength', 'NetworkRegistration', 'BandInfo', 'ModemIdentity',
    'ModemController', 'IntelligenceParams', 'load_config', 'setup_logging',
]
