"""RF fingerprint geolocation - K-nearest neighbors over normalized tower measurements"""

import csv
import logging
import math
import os
from enum import Enum
from typing import List, Sequence

import numpy as np

from cellular.at_parser import classify_signal
from cellular.errors import InsufficientTrainingData, ModelLoadFailure
from cellular.network import (CellTowerMeasurement, Fingerprint, LocationPrediction, TrainingPoint,
                              FEATURE_NAMES, RSRP_RANGE, RSRQ_RANGE, RSSI_RANGE, SINR_RANGE, TA_RANGE)


METERS_PER_DEGREE = 111320.0
MIN_RADIUS_M = 50.0
MAX_RADIUS_M = 2000.0
DISTANCE_EPSILON = 1e-4

MODEL_HEADER = ['features', 'latitude', 'longitude', 'cell_id']
TRAINING_HEADER = FEATURE_NAMES + ['latitude', 'longitude']


class LocatorState(Enum):
    EMPTY = 'empty'
    ACCUMULATING = 'accumulating'
    TRAINED = 'trained'


def _denormalize(value: float, bounds) -> float:
    min_val, max_val = bounds
    return min_val + value * (max_val - min_val)


def measurement_from_vector(vector: Sequence[float]) -> CellTowerMeasurement:
    """Rebuild a measurement whose normalized vector matches the stored one"""
    cell_id_low = int(round(vector[5] * 1000))
    cell_id_high = int(round(vector[6] * 1000))
    return CellTowerMeasurement(
        mcc=int(round(vector[7] * 1000)),
        mnc=int(round(vector[8] * 1000)),
        cell_id=cell_id_high * 1000 + cell_id_low,
        rsrp=_denormalize(vector[0], RSRP_RANGE),
        rsrq=_denormalize(vector[1], RSRQ_RANGE),
        rssi=_denormalize(vector[2], RSSI_RANGE),
        sinr=_denormalize(vector[3], SINR_RANGE),
        timing_advance=_denormalize(vector[4], TA_RANGE),
        is_serving_cell=True
    )


class RFLocator:
    """
    Fingerprint database answering "where am I" from a single serving-cell measurement.

    Training points accumulate until train() turns them into fingerprints; queries
    rank the fingerprint table by Euclidean distance in feature space and average
    the K closest positions weighted by inverse distance.
    """

    def __init__(self, k: int = 5, min_training_points: int = 10):
        self.k = k
        self.min_training_points = min_training_points

        self._fingerprints: List[Fingerprint] = []
        self._pending: List[TrainingPoint] = []

        # Cached fingerprint matrix, rebuilt whenever the table changes
        self._features = np.zeros((0, len(FEATURE_NAMES)), dtype=np.float64)
        self._coordinates = np.zeros((0, 2), dtype=np.float64)

        self.logger = logging.getLogger('RFLocator')

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> LocatorState:
        if self._fingerprints:
            return LocatorState.TRAINED
        if self._pending:
            return LocatorState.ACCUMULATING
        return LocatorState.EMPTY

    @property
    def is_trained(self) -> bool:
        return len(self._fingerprints) > 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def training_data_count(self) -> int:
        return len(self._pending) + len(self._fingerprints)

    @property
    def fingerprints(self) -> List[Fingerprint]:
        return list(self._fingerprints)

    def _rebuild_index(self):
        if self._fingerprints:
            self._features = np.array([fp.features for fp in self._fingerprints], dtype=np.float64)
            self._coordinates = np.array([[fp.latitude, fp.longitude] for fp in self._fingerprints],
                                         dtype=np.float64)
        else:
            self._features = np.zeros((0, len(FEATURE_NAMES)), dtype=np.float64)
            self._coordinates = np.zeros((0, 2), dtype=np.float64)

    # -------------------------------------------------------------------------
    # Data collection
    # -------------------------------------------------------------------------

    def add_training_point(self, measurement: CellTowerMeasurement, latitude: float, longitude: float):
        self._pending.append(TrainingPoint(measurement, latitude, longitude))

        if len(self._pending) % 1000 == 0:
            self.logger.info(f'{len(self._pending)} training points collected')

    def train(self):
        """Convert pending training points into fingerprints"""
        if len(self._pending) < self.min_training_points:
            raise InsufficientTrainingData(len(self._pending), self.min_training_points)

        self.logger.info(f'Building fingerprint database with {len(self._pending)} samples')

        for point in self._pending:
            self._fingerprints.append(Fingerprint(
                features=tuple(float(v) for v in point.measurement.to_normalized_vector()),
                latitude=float(point.latitude),
                longitude=float(point.longitude),
                cell_id=int(point.measurement.cell_id)
            ))
        self._pending = []
        self._rebuild_index()

        unique_cells = len({fp.cell_id for fp in self._fingerprints})
        self.logger.info(f'Training complete: {len(self._fingerprints)} fingerprints, '
                         f'{unique_cells} unique cells, '
                         f'{len(self._fingerprints) / max(unique_cells, 1):.1f} per cell')

    # -------------------------------------------------------------------------
    # Inference
    # -------------------------------------------------------------------------

    def predict(self, measurement: CellTowerMeasurement) -> LocationPrediction:
        if not self._fingerprints:
            return LocationPrediction(confidence=0.0, method='NO_MODEL')

        query = measurement.to_normalized_vector()
        distances = np.linalg.norm(self._features - query, axis=1)

        k = min(self.k, len(distances))
        nearest = np.argsort(distances, kind='stable')[:k]
        nearest_distances = distances[nearest]
        nearest_coords = self._coordinates[nearest]

        # Weighted average by inverse distance
        weights = 1.0 / (nearest_distances + DISTANCE_EPSILON)
        latitude = float(np.sum(nearest_coords[:, 0] * weights) / np.sum(weights))
        longitude = float(np.sum(nearest_coords[:, 1] * weights) / np.sum(weights))

        # Confidence from signal quality and how close the neighbors are in feature space
        quality = classify_signal(measurement)
        distance_confidence = max(0.0, 1.0 - float(np.mean(nearest_distances)))
        confidence = (quality.score / 100.0) * 0.5 + distance_confidence * 0.5

        # Radius from neighbor spread
        lat_spread = float(np.ptp(nearest_coords[:, 0]))
        lon_spread = float(np.ptp(nearest_coords[:, 1]))
        spread_m = max(lat_spread * METERS_PER_DEGREE,
                       lon_spread * METERS_PER_DEGREE * math.cos(math.radians(latitude)))
        radius_m = max(MIN_RADIUS_M, min(MAX_RADIUS_M, spread_m))

        return LocationPrediction(
            latitude=latitude,
            longitude=longitude,
            confidence_radius=radius_m,
            confidence=float(np.clip(confidence, 0.0, 1.0)),
            method='RF_FINGERPRINT_KNN'
        )

    def predict_multi(self, measurements: Sequence[CellTowerMeasurement]) -> LocationPrediction:
        """Combine single-tower predictions weighted by linear received power"""
        results = [(self.predict(m), m) for m in measurements]
        results = [(p, m) for p, m in results if not math.isnan(p.latitude)]
        if not results:
            return LocationPrediction(confidence=0.0, method='NO_MODEL')

        weights = np.array([0.0 if math.isnan(m.rsrp) else 10 ** (m.rsrp / 10) for _, m in results])
        if weights.sum() <= 0:
            weights = np.ones(len(results))

        latitudes = np.array([p.latitude for p, _ in results])
        longitudes = np.array([p.longitude for p, _ in results])

        return LocationPrediction(
            latitude=float(np.sum(latitudes * weights) / weights.sum()),
            longitude=float(np.sum(longitudes * weights) / weights.sum()),
            confidence_radius=float(np.mean([p.confidence_radius for p, _ in results])),
            confidence=float(np.mean([p.confidence for p, _ in results])),
            method='RF_FINGERPRINT_MULTI'
        )

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def save_model(self, path: str):
        """Write the fingerprint table as CSV, features joined by ';'"""
        if not self._fingerprints:
            self.logger.warning('No fingerprints to save')
            return

        parent_dir = os.path.dirname(path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        with open(path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow(MODEL_HEADER)
            for fp in self._fingerprints:
                writer.writerow([';'.join(repr(v) for v in fp.features),
                                 repr(fp.latitude), repr(fp.longitude), fp.cell_id])

        self.logger.info(f'Model saved to {path} ({len(self._fingerprints)} fingerprints)')

    def load_model(self, path: str):
        """Replace the fingerprint table with the one stored at path"""
        if not os.path.isfile(path):
            raise ModelLoadFailure(f'Model file not found: {path}')

        fingerprints = []
        try:
            with open(path, newline='', encoding='utf-8') as f:
                reader = csv.reader(f)
                header = next(reader, None)
                if header != MODEL_HEADER:
                    raise ModelLoadFailure(f'Unexpected model header in {path}: {header}')

                for line_number, row in enumerate(reader, start=2):
                    if not row:
                        continue
                    try:
                        features = tuple(float(v) for v in row[0].split(';'))
                        if len(features) != len(FEATURE_NAMES):
                            raise ValueError(f'expected {len(FEATURE_NAMES)} features, got {len(features)}')
                        fingerprints.append(Fingerprint(
                            features=features,
                            latitude=float(row[1]),
                            longitude=float(row[2]),
                            cell_id=int(row[3])
                        ))
                    except (ValueError, IndexError) as e:
                        raise ModelLoadFailure(f'Corrupt model row {line_number} in {path}: {e}') from e
        except (UnicodeDecodeError, csv.Error, OSError) as e:
            raise ModelLoadFailure(f'Unreadable model file {path}: {e}') from e

        self._fingerprints = fingerprints
        self._rebuild_index()
        self.logger.info(f'Model loaded from {path} ({len(fingerprints)} fingerprints)')

    def save_training_data(self, path: str):
        """Write pending points as normalized features plus coordinates"""
        parent_dir = os.path.dirname(path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        with open(path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow(TRAINING_HEADER)
            for point in self._pending:
                vector = point.measurement.to_normalized_vector()
                writer.writerow([repr(float(v)) for v in vector] +
                                [repr(float(point.latitude)), repr(float(point.longitude))])

        self.logger.info(f'Training data saved to {path} ({len(self._pending)} points)')

    def load_training_data(self, path: str) -> int:
        """Append stored training points to the pending set; returns how many were read"""
        if not os.path.isfile(path):
            raise ModelLoadFailure(f'Training data file not found: {path}')

        points = []
        try:
            with open(path, newline='', encoding='utf-8') as f:
                reader = csv.reader(f)
                next(reader, None)
                for line_number, row in enumerate(reader, start=2):
                    if len(row) < len(TRAINING_HEADER):
                        continue
                    try:
                        values = [float(v) for v in row[:len(TRAINING_HEADER)]]
                        measurement = measurement_from_vector(values[:len(FEATURE_NAMES)])
                    except ValueError:
                        self.logger.warning(f'Skipping unreadable training row {line_number} in {path}')
                        continue

                    points.append(TrainingPoint(measurement, values[-2], values[-1]))
        except (UnicodeDecodeError, csv.Error, OSError) as e:
            raise ModelLoadFailure(f'Unreadable training data file {path}: {e}') from e

        self._pending.extend(points)
        self.logger.info(f'Loaded {len(points)} training points from {path}')
        return len(points)
