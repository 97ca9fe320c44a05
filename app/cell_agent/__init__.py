"""Cellular intelligence engines - RF fingerprint geolocation and handover prediction"""

from .events import EventBus, EventType, Event
from .rf_locator import RFLocator, LocatorState
from .handover_predictor import HandoverPredictor
from .intelligence import CellularIntelligence, ServiceState

__all__ = ['EventBus', 'EventType', 'Event', 'RFLocator', 'LocatorState',
           'HandoverPredictor', 'CellularIntelligence', 'ServiceState']
