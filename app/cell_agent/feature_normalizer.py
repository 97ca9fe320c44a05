# cell_agent/feature_normalizer.py

import numpy as np


class FeatureNormalizer:
    """
    Scales handover sequence features into [0, 1] with Min-Max scaling.

    Per-timestep layout: serving RSRP, RSRQ, SINR, then num_neighbors neighbor
    RSRPs (strongest first, zero padded), then velocity.
    """
    def __init__(self, num_neighbors=6):
        self.num_neighbors = num_neighbors

        # Serving cell features
        self.serving_bounds = {
            'rsrp': [-140, -40],
            'rsrq': [-20, -3],
            'sinr': [-20, 30],
        }

        # Neighbor RSRP shares the serving RSRP scale
        self.neighbor_bounds = [-140, -40]

        # Device motion, km/h
        self.velocity_bounds = [0, 200]

    @property
    def feature_dim(self):
        return len(self.serving_bounds) + self.num_neighbors + 1

    def _normalize_value(self, value, min_val, max_val):
        """Normalize a single value, missing readings map to 0"""
        if value is None or np.isnan(value):
            return 0.0
        if max_val == min_val:
            return 0.5
        return float(np.clip((value - min_val) / (max_val - min_val), 0.0, 1.0))

    def normalize_snapshot(self, snapshot):
        """Feature vector for one SignalSnapshot"""
        normalized = np.zeros(self.feature_dim, dtype=np.float32)

        serving_values = [snapshot.serving_rsrp, snapshot.serving_rsrq, snapshot.serving_sinr]
        for i, (key, value) in enumerate(zip(self.serving_bounds, serving_values)):
            min_val, max_val = self.serving_bounds[key]
            normalized[i] = self._normalize_value(value, min_val, max_val)

        start_idx = len(self.serving_bounds)
        for n, rsrp in enumerate(snapshot.neighbor_rsrps[:self.num_neighbors]):
            normalized[start_idx + n] = self._normalize_value(rsrp, *self.neighbor_bounds)

        normalized[-1] = self._normalize_value(snapshot.velocity_kmh, *self.velocity_bounds)
        return normalized

    def normalize_sequence(self, snapshots):
        """Stack snapshots into a (sequence_length, feature_dim) array"""
        if not snapshots:
            return np.zeros((0, self.feature_dim), dtype=np.float32)
        return np.stack([self.normalize_snapshot(s) for s in snapshots])
