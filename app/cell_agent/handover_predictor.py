"""Handover prediction - rule-based signal trend analysis with an optional learned sequence model"""

import logging
import os
from typing import List, Optional, Tuple

import numpy as np
import torch

from cellular.errors import ModelLoadFailure
from cellular.network import CellTowerMeasurement, NeighborCell, HandoverPrediction, HandoverReason
from .feature_normalizer import FeatureNormalizer
from .models import load_handover_model
from .snapshot_buffer import SignalSnapshot, SnapshotBuffer


RSRP_HANDOVER_THRESHOLD = -110.0    # dBm, below this consider handover
RSRP_HYSTERESIS = 3.0               # dB, neighbor must be this much better
SIGNAL_FADE_RATE_THRESHOLD = -2.0   # dB/s, fast degradation
PREDICTION_HORIZON_MS = 5000.0      # look ahead 5 seconds

USABLE_NEIGHBOR_RSRP = -115.0       # dBm, weakest neighbor worth recommending
NEIGHBOR_GRACE_MS = 1000.0          # delay before acting on a stronger neighbor
HIGH_VELOCITY_KMH = 50.0
MIN_RISING_TREND_DB = 1.0           # neighbor rise over the window
VELOCITY_CANDIDATE_WINDOW_DB = 5.0  # neighbor must be within this of serving
MODEL_PROBABILITY_THRESHOLD = 0.7

MIN_HISTORY = 5
RECENT_WINDOW = 10


def calculate_fade_rate(snapshots: List[SignalSnapshot]) -> float:
    """Least-squares slope of serving RSRP against elapsed seconds (dB/s)"""
    if len(snapshots) < 2:
        return 0.0

    x = np.array([s.timestamp - snapshots[0].timestamp for s in snapshots], dtype=np.float64)
    y = np.array([s.serving_rsrp for s in snapshots], dtype=np.float64)
    n = len(snapshots)

    denominator = n * np.sum(x * x) - np.sum(x) ** 2
    if denominator == 0:
        return 0.0

    return float((n * np.sum(x * y) - np.sum(x) * np.sum(y)) / denominator)


def find_best_neighbor(snapshot: SignalSnapshot,
                       usable_rsrp: float = USABLE_NEIGHBOR_RSRP) -> Optional[Tuple[int, float]]:
    """Strongest neighbor, only if it is usable"""
    best = None
    for cell_id, rsrp in zip(snapshot.neighbor_cell_ids, snapshot.neighbor_rsrps):
        if np.isnan(rsrp):
            continue
        if best is None or rsrp > best[1]:
            best = (cell_id, rsrp)

    if best is not None and best[1] > usable_rsrp:
        return best
    return None


def find_stronger_neighbor(snapshot: SignalSnapshot,
                           hysteresis: float = RSRP_HYSTERESIS) -> Optional[Tuple[int, float]]:
    """First neighbor beating serving RSRP by more than the hysteresis margin"""
    for cell_id, rsrp in zip(snapshot.neighbor_cell_ids, snapshot.neighbor_rsrps):
        if rsrp > snapshot.serving_rsrp + hysteresis:
            return cell_id, rsrp
    return None


def predict_coverage_at_velocity(current: SignalSnapshot, recent: List[SignalSnapshot],
                                 hysteresis: float = RSRP_HYSTERESIS,
                                 horizon_ms: float = PREDICTION_HORIZON_MS) -> Optional[Tuple[int, float, float]]:
    """
    Find the neighbor rising fastest and estimate when it reaches parity.

    Returns:
        (cell_id, rsrp, time_ms) or None
    """
    if len(recent) < MIN_HISTORY or not current.neighbor_rsrps:
        return None

    trends = []
    for cell_id, current_rsrp in zip(current.neighbor_cell_ids, current.neighbor_rsrps):
        history = [(s.timestamp, s.neighbor_rsrps[s.neighbor_cell_ids.index(cell_id)])
                   for s in recent if cell_id in s.neighbor_cell_ids]
        if len(history) >= 3:
            # Simple trend: last - first
            trend = history[-1][1] - history[0][1]
            elapsed = history[-1][0] - history[0][0]
            trends.append((cell_id, trend, elapsed, current_rsrp))

    rising = [t for t in trends if t[1] > MIN_RISING_TREND_DB]
    if not rising:
        return None

    cell_id, trend, elapsed, rsrp = max(rising, key=lambda t: t[1])
    if not rsrp > current.serving_rsrp - VELOCITY_CANDIDATE_WINDOW_DB:
        return None

    gap_to_close = current.serving_rsrp - rsrp + hysteresis
    rate = trend / elapsed if elapsed > 0 else trend  # dB/s
    time_ms = gap_to_close / rate * 1000

    if 0 < time_ms < horizon_ms:
        return cell_id, rsrp, time_ms
    return None


class HandoverPredictor:
    """Keeps a bounded snapshot history and recommends when and where to hand over."""

    def __init__(self, sequence_length: int = 50, num_neighbors: int = 6,
                 rsrp_threshold: float = RSRP_HANDOVER_THRESHOLD,
                 hysteresis: float = RSRP_HYSTERESIS,
                 fade_rate_threshold: float = SIGNAL_FADE_RATE_THRESHOLD,
                 horizon_ms: float = PREDICTION_HORIZON_MS,
                 device: str = 'cpu'):
        """
        Args:
            sequence_length: Time steps fed to the learned model (history keeps twice this)
            num_neighbors: Max neighbor cells tracked per snapshot
            rsrp_threshold: Serving RSRP below which handover is due (dBm)
            hysteresis: Margin a neighbor must beat serving by (dB)
            fade_rate_threshold: Serving RSRP slope considered a fast fade (dB/s)
            horizon_ms: Look-ahead window for predicted handovers
            device: Torch device for the learned model
        """
        self.sequence_length = int(sequence_length)
        self.num_neighbors = int(num_neighbors)
        self.rsrp_threshold = rsrp_threshold
        self.hysteresis = hysteresis
        self.fade_rate_threshold = fade_rate_threshold
        self.horizon_ms = horizon_ms
        self.device = torch.device(device)

        self.buffer = SnapshotBuffer(capacity=self.sequence_length * 2)
        self.normalizer = FeatureNormalizer(num_neighbors=self.num_neighbors)

        # Learned strategy; any callable mapping a (1, L, F) tensor to 3 outputs
        self.model = None

        self.logger = logging.getLogger('HandoverPredictor')

    @property
    def is_model_loaded(self) -> bool:
        return self.model is not None

    # -------------------------------------------------------------------------
    # Data ingestion
    # -------------------------------------------------------------------------

    def record_measurement(self, serving: CellTowerMeasurement, neighbors: List[NeighborCell],
                           velocity_kmh: float = 0.0, timestamp: Optional[float] = None):
        """Add one serving + neighbor sample to the history"""
        ranked = sorted(neighbors, key=lambda n: -np.inf if np.isnan(n.rsrp) else n.rsrp, reverse=True)
        ranked = ranked[:self.num_neighbors]

        snapshot = SignalSnapshot(
            timestamp=serving.timestamp if timestamp is None else timestamp,
            serving_rsrp=serving.rsrp,
            serving_rsrq=serving.rsrq,
            serving_sinr=serving.sinr,
            serving_cell_id=serving.cell_id,
            neighbor_rsrps=tuple(n.rsrp for n in ranked),
            neighbor_cell_ids=tuple(n.identity for n in ranked),
            velocity_kmh=velocity_kmh
        )
        self.buffer.add(snapshot)

    def reset(self):
        self.buffer.clear()

    # -------------------------------------------------------------------------
    # Rule-based prediction
    # -------------------------------------------------------------------------

    def _recommend(self, current: SignalSnapshot, target: Tuple[int, float], time_ms: float,
                   reason: HandoverReason) -> HandoverPrediction:
        return HandoverPrediction(
            handover_imminent=True,
            time_to_handover_ms=float(time_ms),
            recommended_cell_id=target[0],
            target_cell_rsrp=target[1],
            current_cell_rsrp=current.serving_rsrp,
            reason=reason
        )

    def predict_rule_based(self) -> HandoverPrediction:
        """Run the four checks in priority order, first match wins"""
        if len(self.buffer) < MIN_HISTORY:
            return HandoverPrediction()

        current = self.buffer.current
        recent = self.buffer.latest(RECENT_WINDOW)

        # Check 1: signal already below threshold
        if current.serving_rsrp < self.rsrp_threshold:
            best = find_best_neighbor(current)
            if best is not None:
                return self._recommend(current, best, 0.0, HandoverReason.SIGNAL_DEGRADING)

        # Check 2: signal fading rapidly
        fade_rate = calculate_fade_rate(recent)
        if fade_rate < self.fade_rate_threshold:
            time_to_threshold = (current.serving_rsrp - self.rsrp_threshold) / abs(fade_rate)
            time_ms = max(0.0, time_to_threshold * 1000)
            if time_ms < self.horizon_ms:
                best = find_best_neighbor(current)
                if best is not None:
                    return self._recommend(current, best, time_ms, HandoverReason.SIGNAL_DEGRADING)

        # Check 3: neighbor significantly stronger
        stronger = find_stronger_neighbor(current, self.hysteresis)
        if stronger is not None:
            return self._recommend(current, stronger, NEIGHBOR_GRACE_MS, HandoverReason.NEIGHBOR_STRONGER)

        # Check 4: moving fast, pre-empt the neighbor that is catching up
        if current.velocity_kmh > HIGH_VELOCITY_KMH:
            coverage = predict_coverage_at_velocity(current, recent, self.hysteresis, self.horizon_ms)
            if coverage is not None:
                cell_id, rsrp, time_ms = coverage
                return self._recommend(current, (cell_id, rsrp), time_ms, HandoverReason.VELOCITY_BASED)

        return HandoverPrediction(current_cell_rsrp=current.serving_rsrp)

    # -------------------------------------------------------------------------
    # Learned model
    # -------------------------------------------------------------------------

    def set_model(self, model):
        """Install a learned strategy, None reverts to rule-based only"""
        if model is not None and not callable(model):
            raise TypeError('handover model must be callable')
        if isinstance(model, torch.nn.Module):
            model.eval()
        self.model = model

    def load_model(self, model_path: str):
        """Load a HandoverNet checkpoint; raises ModelLoadFailure when unusable"""
        if not os.path.isfile(model_path):
            raise ModelLoadFailure(f'Model file not found: {model_path}')

        try:
            model, sequence_length = load_handover_model(model_path, device=self.device)
        except Exception as e:
            raise ModelLoadFailure(f'Failed to load model {model_path}: {e}') from e

        if model.input_dim != self.normalizer.feature_dim:
            raise ModelLoadFailure(
                f'Model expects {model.input_dim} features per step, '
                f'predictor produces {self.normalizer.feature_dim}')
        if sequence_length != self.sequence_length:
            self.logger.warning(f'Model trained on sequence length {sequence_length}, '
                                f'predictor uses {self.sequence_length}')

        self.set_model(model.to(self.device))
        self.logger.info(f'Handover model loaded from {model_path}')

    def build_input_tensor(self, history: List[SignalSnapshot]) -> torch.Tensor:
        """(1, sequence_length, 3 + num_neighbors + 1) float tensor"""
        sequence = self.normalizer.normalize_sequence(history)
        return torch.as_tensor(sequence, dtype=torch.float32, device=self.device).unsqueeze(0)

    def predict_with_model(self) -> HandoverPrediction:
        """Learned prediction, rule-based when no model or too little history"""
        if self.model is None or len(self.buffer) < self.sequence_length:
            return self.predict_rule_based()

        history = self.buffer.latest(self.sequence_length)
        input_tensor = self.build_input_tensor(history)

        try:
            with torch.no_grad():
                output = self.model(input_tensor)
            values = torch.as_tensor(output).reshape(-1).tolist()
        except (RuntimeError, ValueError, TypeError) as e:
            self.logger.error(f'Model inference failed, using rule-based prediction: {e}')
            return self.predict_rule_based()

        if len(values) < 3:
            self.logger.error(f'Model returned {len(values)} outputs, expected 3')
            return self.predict_rule_based()

        # [handover_prob, time_to_handover, best_neighbor_idx]
        probability, time_fraction, neighbor_index = values[:3]
        current = history[-1]

        if not probability > MODEL_PROBABILITY_THRESHOLD:
            return HandoverPrediction(current_cell_rsrp=current.serving_rsrp)

        index = int(round(neighbor_index))
        if 0 <= index < len(current.neighbor_cell_ids):
            target = (current.neighbor_cell_ids[index], current.neighbor_rsrps[index])
        else:
            target = (0, float('nan'))

        time_ms = float(np.clip(time_fraction, 0.0, 1.0)) * self.horizon_ms
        return self._recommend(current, target, time_ms, HandoverReason.SIGNAL_DEGRADING)

    def predict(self) -> HandoverPrediction:
        """Learned model when usable, rule-based otherwise"""
        if self.is_model_loaded and len(self.buffer) >= self.sequence_length:
            return self.predict_with_model()
        return self.predict_rule_based()
