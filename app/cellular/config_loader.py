"""Service configuration loader - YAML file mapped onto IntelligenceParams"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, Optional

import yaml


DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / 'config.yaml'

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class IntelligenceParams:
    # Serial line
    port: str = '/dev/ttyUSB2'
    baud_rate: int = 115200
    serial_timeout: float = 5.0
    connect_timeout: float = 5.0
    engineering_timeout: float = 10.0
    rescan_timeout: float = 60.0

    # Polling
    polling_interval_ms: int = 1000
    auto_handover: bool = False

    # Handover engine
    sequence_length: int = 50
    num_neighbors: int = 6
    rsrp_handover_threshold: float = -110.0
    rsrp_hysteresis: float = 3.0
    fade_rate_threshold: float = -2.0
    prediction_horizon_ms: float = 5000.0
    handover_model_path: Optional[str] = None

    # Geolocation engine
    k_neighbors: int = 5
    min_training_points: int = 10
    location_confidence_threshold: float = 0.3
    locator_model_path: Optional[str] = None

    # Propagation defaults
    tx_power_dbm: float = 46.0
    antenna_gain_db: float = 15.0

    # Logging
    log_level: str = 'INFO'


def load_config(config_path: Optional[str] = None) -> IntelligenceParams:
    """Load configuration from a YAML file, defaults when no file is given"""

    if config_path is None:
        if not DEFAULT_CONFIG_PATH.is_file():
            return _validate_config(IntelligenceParams())
        config_path = DEFAULT_CONFIG_PATH

    path = Path(config_path)
    if not path.is_file():
        raise ValueError(f'Config file not found: {config_path}')

    with open(path, 'r') as f:
        cfg = yaml.safe_load(f) or {}

    params = _convert_yaml_to_params(cfg)
    params.handover_model_path = _resolve_path(params.handover_model_path, path.parent)
    params.locator_model_path = _resolve_path(params.locator_model_path, path.parent)
    return _validate_config(params)


def _resolve_path(value: Optional[str], base_dir: Path) -> Optional[str]:
    """Resolve a relative model path against the config file directory"""
    if not value:
        return value
    resolved = Path(value).expanduser()
    if not resolved.is_absolute():
        resolved = base_dir / resolved
    return str(resolved)


def _get_field_or_default(cfg: Dict, field: str, default: Any) -> Any:
    """Get field value or default"""
    value = cfg.get(field, default)
    return default if value is None else value


def _convert_yaml_to_params(cfg: Dict) -> IntelligenceParams:
    """Convert nested YAML sections to IntelligenceParams"""

    defaults = IntelligenceParams()
    serial = cfg.get('serial') or {}
    polling = cfg.get('polling') or {}
    handover = cfg.get('handover') or {}
    locator = cfg.get('locator') or {}
    propagation = cfg.get('propagation') or {}
    logging_cfg = cfg.get('logging') or {}

    return IntelligenceParams(
        # Serial line
        port=_get_field_or_default(serial, 'port', defaults.port),
        baud_rate=int(_get_field_or_default(serial, 'baud_rate', defaults.baud_rate)),
        serial_timeout=float(_get_field_or_default(serial, 'timeout_s', defaults.serial_timeout)),
        connect_timeout=float(_get_field_or_default(serial, 'connect_timeout_s', defaults.connect_timeout)),
        engineering_timeout=float(_get_field_or_default(serial, 'engineering_timeout_s',
                                                        defaults.engineering_timeout)),
        rescan_timeout=float(_get_field_or_default(serial, 'rescan_timeout_s', defaults.rescan_timeout)),

        # Polling
        polling_interval_ms=int(_get_field_or_default(polling, 'interval_ms', defaults.polling_interval_ms)),
        auto_handover=bool(_get_field_or_default(polling, 'auto_handover', defaults.auto_handover)),

        # Handover engine
        sequence_length=int(_get_field_or_default(handover, 'sequence_length', defaults.sequence_length)),
        num_neighbors=int(_get_field_or_default(handover, 'num_neighbors', defaults.num_neighbors)),
        rsrp_handover_threshold=float(_get_field_or_default(handover, 'rsrp_threshold',
                                                            defaults.rsrp_handover_threshold)),
        rsrp_hysteresis=float(_get_field_or_default(handover, 'hysteresis_db', defaults.rsrp_hysteresis)),
        fade_rate_threshold=float(_get_field_or_default(handover, 'fade_rate_threshold',
                                                        defaults.fade_rate_threshold)),
        prediction_horizon_ms=float(_get_field_or_default(handover, 'prediction_horizon_ms',
                                                          defaults.prediction_horizon_ms)),
        handover_model_path=handover.get('model_path'),

        # Geolocation engine
        k_neighbors=int(_get_field_or_default(locator, 'k_neighbors', defaults.k_neighbors)),
        min_training_points=int(_get_field_or_default(locator, 'min_training_points',
                                                      defaults.min_training_points)),
        location_confidence_threshold=float(_get_field_or_default(locator, 'confidence_threshold',
                                                                  defaults.location_confidence_threshold)),
        locator_model_path=locator.get('model_path'),

        # Propagation defaults
        tx_power_dbm=float(_get_field_or_default(propagation, 'tx_power_dbm', defaults.tx_power_dbm)),
        antenna_gain_db=float(_get_field_or_default(propagation, 'antenna_gain_db', defaults.antenna_gain_db)),

        # Logging
        log_level=str(_get_field_or_default(logging_cfg, 'level', defaults.log_level)).upper(),
    )


def _validate_config(params: IntelligenceParams) -> IntelligenceParams:
    """Validate configuration values"""

    checks = [
        (params.baud_rate > 0, 'serial.baud_rate must be positive'),
        (params.serial_timeout > 0, 'serial.timeout_s must be positive'),
        (params.polling_interval_ms > 0, 'polling.interval_ms must be positive'),
        (params.sequence_length >= 5, 'handover.sequence_length must be at least 5'),
        (params.num_neighbors > 0, 'handover.num_neighbors must be positive'),
        (params.k_neighbors > 0, 'locator.k_neighbors must be positive'),
        (0.0 <= params.location_confidence_threshold <= 1.0, 'locator.confidence_threshold must be in [0, 1]'),
        (params.log_level in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'),
         f'logging.level {params.log_level!r} is not a logging level'),
    ]
    for ok, message in checks:
        if not ok:
            raise ValueError(message)

    return params


def setup_logging(level: str = 'INFO'):
    """Attach a single console handler to the root logger"""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Clear existing handlers
    root.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console_handler)
