"""Error taxonomy shared by the modem channel, decoder and engines"""


class CellularError(Exception):
    """Base class for all cellular intelligence errors"""


class ModemConnectionError(CellularError, ConnectionError):
    """Serial port could not be opened or the modem did not answer the probe"""


class CommandTimeout(CellularError, TimeoutError):
    """No terminator was seen before the command timeout elapsed"""

    def __init__(self, command: str, timeout: float, partial: str = ''):
        super().__init__(f'{command!r} timed out after {timeout:.1f}s')
        self.command = command
        self.timeout = timeout
        self.partial = partial


class MalformedResponse(CellularError, ValueError):
    """Modem response text could not be decoded"""

    def __init__(self, kind: str, response: str):
        super().__init__(f'Invalid {kind} response: {response!r}')
        self.kind = kind
        self.response = response


class InsufficientTrainingData(CellularError):
    """Locator training was requested before enough points were collected"""

    def __init__(self, available: int, required: int):
        super().__init__(f'Insufficient training data: {available}/{required} minimum')
        self.available = available
        self.required = required


class ModelLoadFailure(CellularError):
    """A model file is missing or cannot be decoded"""
