# cell_agent/snapshot_buffer.py
from collections import namedtuple

# One time-series sample; neighbor lists are sorted strongest first
SignalSnapshot = namedtuple('SignalSnapshot', [
    'timestamp', 'serving_rsrp', 'serving_rsrq', 'serving_sinr', 'serving_cell_id',
    'neighbor_rsrps', 'neighbor_cell_ids', 'velocity_kmh'
])


class SnapshotBuffer:
    """Time-ordered snapshot history, evicting oldest-first past capacity."""
    def __init__(self, capacity):
        self.memory = []
        self.capacity = capacity

    def add(self, snapshot: SignalSnapshot):
        """Append a snapshot."""
        self.memory.append(snapshot)
        if len(self.memory) > self.capacity:
            # keep last capacity snapshots (FIFO)
            self.memory = self.memory[-self.capacity:]

    def latest(self, count):
        """Return the most recent count snapshots, oldest first."""
        if count <= 0:
            return []
        return self.memory[-count:]

    @property
    def current(self):
        return self.memory[-1] if self.memory else None

    def clear(self):
        self.memory = []

    def __len__(self):
        return len(self.memory)
