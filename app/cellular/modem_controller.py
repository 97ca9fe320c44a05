"""
Modem control over a serial line using AT commands.

One command is in flight at a time: send_command() holds the command lock
while it discards stale input, writes the command and waits for a final
result code (OK / ERROR / +CME ERROR / +CMS ERROR / '>' prompt).

A background reader thread owns all reads from the port. Lines belonging to
the in-flight command go to its response buffer; unsolicited result codes
(+CREG, +CEREG, RING, ...) go to the registered unsolicited handlers. The
reader never takes the command lock.
"""

import logging
import threading
import time
from typing import Callable, List, Optional, Tuple

import serial
from serial.tools import list_ports

from . import at_parser
from .errors import CommandTimeout, MalformedResponse, ModemConnectionError
from .network import (CellTowerMeasurement, NeighborCell, NetworkRegistration, BandInfo,
                      ModemIdentity)


FINAL_RESULT_CODES = ('OK', 'ERROR')
ERROR_PREFIXES = ('+CME ERROR', '+CMS ERROR')
PROMPT = '>'

UNSOLICITED_PREFIXES = ('+CREG:', '+CEREG:', '+CGREG:', '+C5GREG:', 'RING', '+CRING:', '+CMTI:')
# Never part of a command response, routed as unsolicited even mid-command
ALWAYS_UNSOLICITED = ('RING', '+CRING:', '+CMTI:')
REGISTRATION_PREFIXES = ('+CREG:', '+CEREG:', '+CGREG:', '+C5GREG:')


def is_final_line(line: str) -> bool:
    """True when the line terminates a command response"""
    return line in FINAL_RESULT_CODES or line.startswith(ERROR_PREFIXES) or line == PROMPT


def belongs_to_command(line: str, command: Optional[str]) -> bool:
    """True when a line read during command may be part of its response"""
    if line.startswith(ALWAYS_UNSOLICITED):
        return False
    if line.startswith(REGISTRATION_PREFIXES):
        # +CEREG: answers AT+CEREG? / AT+CEREG=?, anything else is a push
        name = line.split(':', 1)[0]
        return command is not None and command.upper().startswith('AT' + name)
    return True


def response_ok(response: str) -> bool:
    return any(line.strip() == 'OK' for line in response.splitlines())


class ModemController:
    '''Serial AT command channel to a cellular modem'''

    READ_POLL_INTERVAL = 0.05   # Reader thread read timeout (s)
    ENGINEERING_PAUSE = 0.1     # Gap between serving and neighbor queries (s)
    RESCAN_PAUSE = 1.0          # Gap between deregister and reregister (s)

    def __init__(self, port: str = '/dev/ttyUSB2', baud_rate: int = 115200,
                 timeout: float = 5.0, connect_timeout: float = 5.0,
                 engineering_timeout: float = 10.0, rescan_timeout: float = 60.0,
                 serial_factory: Optional[Callable] = None):
        self.port = port
        self.baud_rate = baud_rate
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.engineering_timeout = engineering_timeout
        self.rescan_timeout = rescan_timeout
        self._serial_factory = serial_factory or serial.Serial

        self._serial = None
        self._connected = False

        # Command execution is exclusive over the whole timeout-bounded exchange
        self._command_lock = threading.Lock()

        # Guards the response buffer shared with the reader thread
        self._buffer_lock = threading.Lock()
        self._response_lines: Optional[List[str]] = None
        self._pending_command: Optional[str] = None
        self._response_done = threading.Event()
        self._partial_line = ''

        self._reader_thread: Optional[threading.Thread] = None
        self._reader_stop = threading.Event()

        self._unsolicited_handlers: List[Callable[[str], None]] = []

        self.identity = ModemIdentity(port=port)
        self.logger = logging.getLogger('ModemController')

    @property
    def is_connected(self) -> bool:
        return self._connected and self._serial is not None and self._serial.is_open

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    def connect(self):
        """Open the port, probe with AT and identify the modem"""
        if self.is_connected:
            return

        try:
            self._serial = self._serial_factory(
                port=self.port,
                baudrate=self.baud_rate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=self.READ_POLL_INTERVAL,
                write_timeout=self.timeout,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False
            )
        except (serial.SerialException, OSError) as e:
            self._serial = None
            raise ModemConnectionError(f'Failed to open serial port {self.port}: {e}') from e

        self._start_reader()

        try:
            response = self.send_command('AT', timeout=self.connect_timeout)
            if not response_ok(response):
                raise ModemConnectionError(f'Modem on {self.port} did not acknowledge AT: {response!r}')
            self._identify()
        except CommandTimeout as e:
            self.disconnect()
            raise ModemConnectionError(f'No response from modem on {self.port}') from e
        except ModemConnectionError:
            self.disconnect()
            raise

        self._connected = True
        self.logger.info(f'Modem connected: {self.identity.manufacturer} {self.identity.model} '
                         f'(firmware {self.identity.firmware_version}) on {self.port}')

    def disconnect(self):
        """Stop the reader and close the port; safe to call repeatedly"""
        self._connected = False
        self._reader_stop.set()

        reader = self._reader_thread
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=1.0)
        self._reader_thread = None

        if self._serial is not None:
            try:
                if self._serial.is_open:
                    self._serial.close()
            except (serial.SerialException, OSError) as e:
                self.logger.error(f'Error closing serial port: {e}')
            self._serial = None
            self.logger.info('Modem disconnected')

    def _identify(self):
        self.identity.manufacturer = self._query_info('AT+CGMI')
        self.identity.model = self._query_info('AT+CGMM')
        self.identity.firmware_version = self._query_info('AT+CGMR')

    def _query_info(self, command: str) -> str:
        response = self.send_command(command)
        lines = [line for line in response.splitlines()
                 if line and line != 'OK' and line != command]
        return ' '.join(lines).strip()

    # -------------------------------------------------------------------------
    # Reader thread
    # -------------------------------------------------------------------------

    def _start_reader(self):
        self._reader_stop.clear()
        self._partial_line = ''
        self._reader_thread = threading.Thread(target=self._reader_loop, name='modem-reader', daemon=True)
        self._reader_thread.start()

    def _reader_loop(self):
        while not self._reader_stop.is_set():
            port = self._serial
            if port is None:
                break
            try:
                chunk = port.read(port.in_waiting or 1)
            except (serial.SerialException, OSError, TypeError) as e:
                if not self._reader_stop.is_set():
                    self.logger.error(f'Serial read failed: {e}')
                break
            if chunk:
                self._feed(chunk.decode('ascii', errors='ignore'))

    def _feed(self, text: str):
        with self._buffer_lock:
            self._partial_line += text
            *lines, self._partial_line = self._partial_line.split('\n')
            # The '>' prompt arrives without a line ending
            if self._partial_line.strip() == PROMPT:
                lines.append(PROMPT)
                self._partial_line = ''

        for line in lines:
            line = line.strip()
            if line:
                self._route_line(line)

    def _route_line(self, line: str):
        with self._buffer_lock:
            if self._response_lines is not None and belongs_to_command(line, self._pending_command):
                self._response_lines.append(line)
                if is_final_line(line):
                    self._response_done.set()
                return

        if line.startswith(UNSOLICITED_PREFIXES):
            self._dispatch_unsolicited(line)
        else:
            self.logger.debug(f'Discarding stray line: {line}')

    def _dispatch_unsolicited(self, line: str):
        for handler in list(self._unsolicited_handlers):
            try:
                handler(line)
            except Exception as e:
                self.logger.error(f'Unsolicited handler failed for {line!r}: {e}')

    def add_unsolicited_handler(self, handler: Callable[[str], None]):
        self._unsolicited_handlers.append(handler)

    def remove_unsolicited_handler(self, handler: Callable[[str], None]):
        if handler in self._unsolicited_handlers:
            self._unsolicited_handlers.remove(handler)

    # -------------------------------------------------------------------------
    # Command execution
    # -------------------------------------------------------------------------

    def send_command(self, command: str, timeout: Optional[float] = None) -> str:
        """
        Send an AT command and collect its response.

        Args:
            command: Command text without line terminator
            timeout: Seconds to wait for a final result code

        Returns:
            All response lines joined with CRLF

        Raises:
            ModemConnectionError: Port is not open or the write failed
            CommandTimeout: No final result code within timeout (partial text attached)
        """
        if self._serial is None or not self._serial.is_open:
            raise ModemConnectionError('Modem not connected')

        timeout = self.timeout if timeout is None else timeout

        with self._command_lock:
            with self._buffer_lock:
                self._serial.reset_input_buffer()
                self._partial_line = ''
                self._response_lines = []
                self._pending_command = command
                self._response_done.clear()

            try:
                self._serial.write(f'{command}\r\n'.encode('ascii'))
                finished = self._response_done.wait(timeout)
            except (serial.SerialException, OSError) as e:
                raise ModemConnectionError(f'Write of {command!r} failed: {e}') from e
            finally:
                with self._buffer_lock:
                    lines = self._response_lines or []
                    self._response_lines = None
                    self._pending_command = None

        response = '\r\n'.join(lines)
        if not finished:
            self.logger.warning(f'Command {command!r} timed out after {timeout:.1f}s')
            raise CommandTimeout(command, timeout, response)

        return response

    # -------------------------------------------------------------------------
    # Signal measurement
    # -------------------------------------------------------------------------

    def get_signal_quality(self) -> Tuple[float, Optional[int]]:
        """Basic signal quality (+CSQ) as (rssi_dbm, ber)"""
        return at_parser.parse_csq(self.send_command('AT+CSQ'))

    def get_extended_signal(self) -> CellTowerMeasurement:
        """Extended signal quality (+CESQ)"""
        return at_parser.parse_cesq(self.send_command('AT+CESQ'))

    def get_cell_measurement(self) -> CellTowerMeasurement:
        """Full serving cell measurement, +CPSI where supported, +CESQ otherwise"""
        manufacturer = self.identity.manufacturer.lower()
        if 'quectel' in manufacturer or 'simcom' in manufacturer:
            return at_parser.parse_cpsi(self.send_command('AT+CPSI?'))
        return self.get_extended_signal()

    def get_engineering_mode(self) -> Tuple[CellTowerMeasurement, List[NeighborCell]]:
        """Serving cell plus neighbor list from engineering mode (+QENG)"""
        serving_response = self.send_command('AT+QENG="servingcell"')
        time.sleep(self.ENGINEERING_PAUSE)
        neighbor_response = self.send_command('AT+QENG="neighbourcell"', timeout=self.engineering_timeout)
        return at_parser.parse_qeng(serving_response + '\r\n' + neighbor_response)

    # -------------------------------------------------------------------------
    # Network operations
    # -------------------------------------------------------------------------

    def get_registration(self) -> NetworkRegistration:
        """Registration state with extended (+CEREG=2) location reporting"""
        self.send_command('AT+CEREG=2')
        return at_parser.parse_registration(self.send_command('AT+CEREG?'))

    def get_carrier(self) -> str:
        return at_parser.parse_carrier(self.send_command('AT+COPS?'))

    def detect_apn(self) -> str:
        """APN for the current carrier, default APN when the carrier is unknown"""
        try:
            carrier = self.get_carrier()
        except MalformedResponse as e:
            self.logger.warning(f'Carrier unknown, using default APN: {e}')
            return at_parser.DEFAULT_APN
        return at_parser.lookup_apn(carrier)

    def get_ip_address(self, cid: int = 1) -> str:
        return at_parser.parse_ip_address(self.send_command(f'AT+CGPADDR={cid}'))

    def get_available_bands(self) -> List[BandInfo]:
        """Configured LTE and NR bands (+QNWPREFCFG)"""
        lte_response = self.send_command('AT+QNWPREFCFG="lte_band"')
        nr_response = self.send_command('AT+QNWPREFCFG="nr5g_band"')
        return at_parser.parse_available_bands(lte_response + '\r\n' + nr_response)

    def force_cell_selection(self, mcc: int, mnc: int, access_technology: int = 7) -> bool:
        """
        Manual operator selection, AcT 0=GSM, 2=UMTS, 7=LTE, 12=NR.
        Can cause loss of service.
        """
        command = f'AT+COPS=1,2,"{mcc:03d}{mnc:02d}",{access_technology}'
        return response_ok(self.send_command(command, timeout=30.0))

    def lock_frequency(self, earfcn: int, pci: Optional[int] = None) -> bool:
        """Lock to an EARFCN (optionally a PCI on it)"""
        command = f'AT+QNWLOCK="common/lte",1,{earfcn}'
        if pci is not None:
            command += f',{pci}'
        return response_ok(self.send_command(command))

    def unlock_frequency(self) -> bool:
        return response_ok(self.send_command('AT+QNWLOCK="common/lte",0'))

    def rescan_network(self) -> bool:
        """Deregister then reregister with automatic operator selection"""
        self.send_command('AT+COPS=2', timeout=5.0)
        time.sleep(self.RESCAN_PAUSE)
        return response_ok(self.send_command('AT+COPS=0', timeout=self.rescan_timeout))

    @staticmethod
    def list_ports() -> List[str]:
        """Serial devices present on this host"""
        return [p.device for p in list_ports.comports()]
