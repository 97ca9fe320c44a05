"""AT response decoding - signal quality, cell info, neighbor lists, registration"""

import math
import re
import time
from typing import List, Optional, Tuple

from .errors import MalformedResponse
from .network import (CellTowerMeasurement, NeighborCell, NetworkRegistration, BandInfo,
                      SignalQuality, SignalStrength, RSRP_RANGE, RSRQ_RANGE, NAN)


CSQ_PATTERN = re.compile(r'\+CSQ:\s*(\d+),(\d+)')
CESQ_PATTERN = re.compile(r'\+CESQ:\s*(\d+),(\d+),(\d+),(\d+),(\d+),(\d+)')
CPSI_LTE_PATTERN = re.compile(
    r'\+CPSI:\s*LTE,\w+,(\d+)-(\d+),(0x[0-9A-Fa-f]+|\d+),(\d+),(0x[0-9A-Fa-f]+|\d+),(\d+),(\d+),\d+,\d+,'
    r'(-?\d+(?:\.\d+)?),(-?\d+(?:\.\d+)?),(-?\d+(?:\.\d+)?),(-?\d+(?:\.\d+)?)')
CPSI_GSM_PATTERN = re.compile(r'\+CPSI:\s*GSM,\w+,(\d+)-(\d+),(\d+),(\d+),(-?\d+)')
REGISTRATION_PATTERN = re.compile(
    r'\+C(5G|E|G)?REG:\s*(?:\d+,)?(\d+)(?:,"([0-9A-Fa-f]*)","([0-9A-Fa-f]*)")?')
COPS_PATTERN = re.compile(r'\+COPS:\s*\d+,\d+,"([^"]+)"')
CGPADDR_PATTERN = re.compile(r'\+CGPADDR:\s*\d+,"([^"]+)"')
LTE_BAND_PATTERN = re.compile(r'"lte_band",([0-9:]+)')
NR_BAND_PATTERN = re.compile(r'"nr5g_band",([0-9:n]+)')

# Registration status codes (27.007)
REG_NOT_REGISTERED = 0
REG_HOME = 1
REG_SEARCHING = 2
REG_DENIED = 3
REG_ROAMING = 5

# Center frequency and bandwidth (MHz) per band, US focus
LTE_BANDS = {
    1: (2100, 20), 2: (1900, 20), 3: (1800, 20), 4: (1700, 20), 5: (850, 10),
    7: (2600, 20), 8: (900, 10), 12: (700, 10), 13: (700, 10), 14: (700, 10),
    17: (700, 10), 25: (1900, 20), 26: (850, 10), 29: (700, 10), 30: (2300, 10),
    38: (2600, 20), 41: (2500, 20), 66: (1700, 20), 71: (600, 10),
}
NR_BANDS = {
    1: (2100, 100), 2: (1900, 100), 5: (850, 20), 7: (2600, 100), 41: (2500, 100),
    66: (1700, 100), 71: (600, 20), 77: (3700, 100), 78: (3500, 100), 79: (4700, 100),
    260: (39000, 100), 261: (28000, 100),  # mmWave
}

# Carrier name fragment -> APN, matched case-insensitively in order
APN_DATABASE = {
    # US carriers
    'AT&T': 'broadband',
    'T-Mobile': 'fast.t-mobile.com',
    'Verizon': 'vzwinternet',
    'Sprint': 'cinet.spcs',
    'US Cellular': 'usccinternet',
    # European carriers
    'Vodafone': 'web.vodafone.de',
    'O2': 'mobile.o2.co.uk',
    'EE': 'everywhere',
    'Three': 'three.co.uk',
    # Asian carriers
    'NTT DoCoMo': 'spmode.ne.jp',
    'SoftBank': 'plus.softbank',
    'SK Telecom': 'lte.sktelecom.com',
}
DEFAULT_APN = 'internet'


def _bounded(value: float, bounds: Tuple[float, float]) -> float:
    """Return value if it lies inside bounds, NaN otherwise (never clamp)"""
    if math.isnan(value) or not bounds[0] <= value <= bounds[1]:
        return NAN
    return value


def _parse_float(token: str) -> float:
    token = token.strip().strip('"')
    if token in ('', '-'):
        return NAN
    try:
        return float(token)
    except ValueError:
        return NAN


def _parse_cell_id(token: str) -> int:
    token = token.strip().strip('"')
    if token.lower().startswith('0x'):
        return int(token, 16)
    return int(token)


def parse_csq(response: str) -> Tuple[float, Optional[int]]:
    """
    Parse +CSQ basic signal quality

    Format: +CSQ: rssi,ber
    rssi 0-31 maps to -113..-51 dBm in 2 dB steps, 99 is unknown.
    ber 0-7, 99 is unknown.

    Returns:
        (rssi_dbm, ber) with NaN / None for unknown values
    """
    match = CSQ_PATTERN.search(response)
    if not match:
        raise MalformedResponse('+CSQ', response)

    rssi_raw = int(match.group(1))
    ber_raw = int(match.group(2))

    rssi_dbm = -113.0 + rssi_raw * 2 if 0 <= rssi_raw <= 31 else NAN
    ber = ber_raw if 0 <= ber_raw <= 7 else None

    return rssi_dbm, ber


def parse_cesq(response: str) -> CellTowerMeasurement:
    """
    Parse +CESQ extended signal quality (3GPP 27.007)

    Format: +CESQ: rxlev,ber,rscp,ecno,rsrq,rsrp
    """
    match = CESQ_PATTERN.search(response)
    if not match:
        raise MalformedResponse('+CESQ', response)

    rxlev, _ber, rscp, _ecno, rsrq, rsrp = (int(g) for g in match.groups())

    # rsrp 0-96 -> -140..-44 dBm, 97 is the ">= -44" bucket
    if 0 <= rsrp <= 96:
        rsrp_dbm = -140.0 + rsrp
    elif rsrp == 97:
        rsrp_dbm = -44.0
    else:
        rsrp_dbm = NAN

    rsrq_db = -20.0 + rsrq * 0.5 if 0 <= rsrq <= 34 else NAN
    rssi_dbm = -110.0 + rxlev if 0 <= rxlev <= 63 else NAN

    if not math.isnan(rsrp_dbm):
        radio_type = 'LTE'
    elif rscp != 255:
        radio_type = 'UMTS'
    else:
        radio_type = 'GSM'

    return CellTowerMeasurement(
        rsrp=rsrp_dbm,
        rsrq=rsrq_db,
        rssi=rssi_dbm,
        radio_type=radio_type,
        timestamp=time.time()
    )


def parse_cpsi(response: str) -> CellTowerMeasurement:
    """
    Parse +CPSI system information

    LTE: +CPSI: LTE,Online,MCC-MNC,TAC,EARFCN,CellID,PCI,Band,DL_BW,UL_BW,RSRP,RSRQ,RSSI,SINR
    GSM: +CPSI: GSM,Online,MCC-MNC,LAC,CellID,RSSI
    """
    lte_match = CPSI_LTE_PATTERN.search(response)
    if lte_match:
        g = lte_match.groups()
        return CellTowerMeasurement(
            mcc=int(g[0]),
            mnc=int(g[1]),
            lac=_parse_cell_id(g[2]),
            earfcn=int(g[3]),
            cell_id=_parse_cell_id(g[4]),
            physical_cell_id=int(g[5]),
            rsrp=_bounded(float(g[7]), RSRP_RANGE),
            rsrq=_bounded(float(g[8]), RSRQ_RANGE),
            rssi=float(g[9]),
            sinr=float(g[10]),
            radio_type='LTE',
            is_serving_cell=True,
            timestamp=time.time()
        )

    gsm_match = CPSI_GSM_PATTERN.search(response)
    if gsm_match:
        g = gsm_match.groups()
        return CellTowerMeasurement(
            mcc=int(g[0]),
            mnc=int(g[1]),
            lac=int(g[2]),
            cell_id=int(g[3]),
            rssi=float(g[4]),
            radio_type='GSM',
            is_serving_cell=True,
            timestamp=time.time()
        )

    raise MalformedResponse('+CPSI', response)


def _split_fields(line: str) -> List[str]:
    payload = line.split(':', 1)[1] if ':' in line else line
    return [token.strip().strip('"') for token in payload.split(',')]


def _parse_serving_line(line: str) -> CellTowerMeasurement:
    # +QENG: "servingcell",<state>,"LTE",<duplex>,<mcc>,<mnc>,<cellid>,<pci>,<earfcn>,
    #        <band>,<ul_bw>,<dl_bw>,[<tac>,]<rsrp>,<rsrq>,<rssi>,<sinr>,...
    fields = _split_fields(line)
    if len(fields) < 16:
        raise MalformedResponse('+QENG servingcell', line)

    try:
        rest = fields[12:]
        tac = 0
        # Some firmware inserts the TAC before RSRP, RSRP is always negative
        if not rest[0].startswith('-') and len(rest) >= 5:
            tac = int(rest[0], 16)
            rest = rest[1:]

        return CellTowerMeasurement(
            radio_type=fields[2],
            mcc=int(fields[4]),
            mnc=int(fields[5]),
            cell_id=int(fields[6], 16),
            physical_cell_id=int(fields[7]),
            earfcn=int(fields[8]),
            lac=tac,
            rsrp=_bounded(_parse_float(rest[0]), RSRP_RANGE),
            rsrq=_bounded(_parse_float(rest[1]), RSRQ_RANGE),
            rssi=_parse_float(rest[2]),
            sinr=_parse_float(rest[3]),
            is_serving_cell=True,
            timestamp=time.time()
        )
    except (ValueError, IndexError):
        raise MalformedResponse('+QENG servingcell', line)


def _parse_neighbor_line(line: str) -> Optional[NeighborCell]:
    # +QENG: "neighbourcell intra","LTE",<earfcn>,<pci>,<rsrp>,<rsrq>,...
    fields = _split_fields(line)
    if len(fields) < 6:
        return None
    try:
        return NeighborCell(
            earfcn=int(fields[2]),
            physical_cell_id=int(fields[3]),
            rsrp=_bounded(_parse_float(fields[4]), RSRP_RANGE),
            rsrq=_bounded(_parse_float(fields[5]), RSRQ_RANGE)
        )
    except ValueError:
        return None


def parse_qeng(response: str) -> Tuple[CellTowerMeasurement, List[NeighborCell]]:
    """
    Parse +QENG engineering mode output into the serving cell and its neighbors

    Unreadable neighbor lines are skipped; a missing serving line is an error.
    """
    serving = None
    neighbors = []

    for line in response.splitlines():
        trimmed = line.strip()
        if '"servingcell"' in trimmed:
            serving = _parse_serving_line(trimmed)
        elif '"neighbourcell' in trimmed:
            neighbor = _parse_neighbor_line(trimmed)
            if neighbor is not None:
                neighbors.append(neighbor)

    if serving is None:
        raise MalformedResponse('+QENG', response)

    return serving, neighbors


def _determine_technology(response: str) -> str:
    if '+C5GREG' in response:
        return '5G NR'
    if '+CEREG' in response:
        return 'LTE'
    if '+CGREG' in response:
        return 'UMTS'
    return 'GSM'


def parse_registration(response: str) -> NetworkRegistration:
    """
    Parse +CREG / +CGREG / +CEREG / +C5GREG registration state

    Solicited:   +CEREG: n,stat[,"lac","ci"[,AcT]]
    Unsolicited: +CEREG: stat[,"lac","ci"[,AcT]]
    """
    match = REGISTRATION_PATTERN.search(response)
    if not match:
        raise MalformedResponse('registration', response)

    status = int(match.group(2))
    lac = int(match.group(3), 16) if match.group(3) else 0
    cell_id = int(match.group(4), 16) if match.group(4) else 0

    return NetworkRegistration(
        status=status,
        lac=lac,
        cell_id=cell_id,
        registered=status in (REG_HOME, REG_ROAMING),
        roaming=status == REG_ROAMING,
        searching=status == REG_SEARCHING,
        technology=_determine_technology(match.group(0))
    )


def parse_carrier(response: str) -> str:
    """Parse +COPS: mode,format,"operator",AcT"""
    match = COPS_PATTERN.search(response)
    if not match:
        raise MalformedResponse('+COPS', response)
    return match.group(1)


def lookup_apn(carrier: str) -> str:
    """Pick an APN for a carrier name by case-insensitive substring match"""
    carrier_lower = carrier.lower()
    for name, apn in APN_DATABASE.items():
        if name.lower() in carrier_lower:
            return apn
    return DEFAULT_APN


def parse_ip_address(response: str) -> str:
    """Parse +CGPADDR: cid,"ip_addr"[,"ipv6_addr"]"""
    match = CGPADDR_PATTERN.search(response)
    if not match:
        raise MalformedResponse('+CGPADDR', response)
    return match.group(1)


def get_band_info(band_number: int, technology: str = 'LTE') -> BandInfo:
    """Look up a band; unknown bands get frequency 0"""
    if technology == 'LTE':
        frequency, bandwidth = LTE_BANDS.get(band_number, (0, 10))
    else:
        frequency, bandwidth = NR_BANDS.get(band_number, (0, 100))
    return BandInfo(band_number=band_number, technology=technology,
                    frequency_mhz=frequency, bandwidth_mhz=bandwidth)


def parse_available_bands(response: str) -> List[BandInfo]:
    """Parse +QNWPREFCFG "lte_band" / "nr5g_band" colon separated lists"""
    bands = []

    lte_match = LTE_BAND_PATTERN.search(response)
    if lte_match:
        for token in lte_match.group(1).split(':'):
            if token.isdigit():
                bands.append(get_band_info(int(token), 'LTE'))

    nr_match = NR_BAND_PATTERN.search(response)
    if nr_match:
        for token in nr_match.group(1).split(':'):
            token = token.lstrip('n')
            if token.isdigit():
                bands.append(get_band_info(int(token), '5G NR'))

    if not lte_match and not nr_match:
        raise MalformedResponse('+QNWPREFCFG', response)

    return bands


def classify_signal(measurement: CellTowerMeasurement) -> SignalQuality:
    """Classify LTE signal strength from RSRP, adjusted for SINR"""
    rsrp = measurement.rsrp
    sinr = measurement.sinr

    # NaN compares false everywhere and falls through to no signal
    if rsrp >= -80:
        quality = SignalQuality(SignalStrength.EXCELLENT, 100.0,
                                'Excellent signal - maximum performance', estimated_throughput_mbps=100.0)
    elif rsrp >= -90:
        quality = SignalQuality(SignalStrength.GOOD, 80.0,
                                'Good signal - reliable connection', estimated_throughput_mbps=50.0)
    elif rsrp >= -100:
        quality = SignalQuality(SignalStrength.FAIR, 50.0,
                                'Fair signal - may experience slowdowns', estimated_throughput_mbps=20.0)
    elif rsrp >= -110:
        quality = SignalQuality(SignalStrength.POOR, 25.0,
                                'Poor signal - connection may drop', estimated_throughput_mbps=5.0)
    else:
        quality = SignalQuality(SignalStrength.NO_SIGNAL, 0.0,
                                'No usable signal', estimated_throughput_mbps=0.0)

    if sinr < 0:
        quality.score *= 0.5
        quality.description += ' (high interference)'

    quality.sufficient_for_data = rsrp >= -110 and sinr >= -5
    quality.sufficient_for_voice = rsrp >= -105

    return quality
