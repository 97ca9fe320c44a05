"""Free-space propagation estimates for expected RSRP at a distance from a tower"""

import numpy as np


# Defaults for a macro LTE site, override per region / carrier from config
DEFAULT_TX_POWER_DBM = 46.0  # 40 W
DEFAULT_ANTENNA_GAIN_DB = 15.0

# 20*log10(4*pi/c)
FSPL_CONSTANT_DB = -147.55

MIN_DISTANCE_M = 1.0


def free_space_path_loss(distance_m, frequency_mhz):
    """
    Free Space Path Loss

    FSPL(dB) = 20*log10(d) + 20*log10(f) - 147.55, d in meters, f in Hz

    Args:
        distance_m: Distance in meters (scalar or array)
        frequency_mhz: Carrier frequency in MHz

    Returns:
        Path loss in dB
    """
    distance = np.maximum(np.asarray(distance_m, dtype=np.float64), MIN_DISTANCE_M)
    frequency_hz = np.asarray(frequency_mhz, dtype=np.float64) * 1e6
    path_loss = 20 * np.log10(distance) + 20 * np.log10(frequency_hz) + FSPL_CONSTANT_DB
    if np.ndim(path_loss) == 0:
        return float(path_loss)
    return path_loss


def estimate_rsrp(distance_m, frequency_mhz, tx_power_dbm: float = DEFAULT_TX_POWER_DBM,
                  antenna_gain_db: float = DEFAULT_ANTENNA_GAIN_DB,
                  extra_loss_db: float = 0.0):
    """Expected RSRP = tx power + antenna gain - path loss - extra losses (fading, clutter)"""
    return tx_power_dbm + antenna_gain_db - free_space_path_loss(distance_m, frequency_mhz) - extra_loss_db


def estimate_distance_m(rsrp_dbm: float, frequency_mhz: float,
                        tx_power_dbm: float = DEFAULT_TX_POWER_DBM,
                        antenna_gain_db: float = DEFAULT_ANTENNA_GAIN_DB) -> float:
    """Invert the free-space model: distance at which the given RSRP is expected"""
    if np.isnan(rsrp_dbm) or frequency_mhz <= 0:
        return float('nan')
    path_loss = tx_power_dbm + antenna_gain_db - rsrp_dbm
    exponent = (path_loss - 20 * np.log10(frequency_mhz * 1e6) - FSPL_CONSTANT_DB) / 20
    return float(max(10 ** exponent, MIN_DISTANCE_M))
