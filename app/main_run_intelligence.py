#!/usr/bin/env python3
"""
Run the cellular intelligence service against a modem and print its events
"""

import sys
import threading
from pathlib import Path

# Add app directory to path
sys.path.insert(0, str(Path(__file__).parent))

from cellular import ModemConnectionError, load_config, setup_logging
from cell_agent import CellularIntelligence, EventType


def print_event(event):
    """Console subscriber for every event type"""
    payload = event.payload

    if event.type == EventType.HANDOVER_RECOMMENDED:
        print(f'⚠️  Handover recommended: {payload.reason.name}')
        print(f'   Target cell: {payload.recommended_cell_id}')
        print(f'   Time to switch: {payload.time_to_handover_ms:.0f}ms')
    elif event.type == EventType.LOCATION_UPDATED:
        print(f'Location: {payload.latitude:.6f}, {payload.longitude:.6f} '
              f'(+/-{payload.confidence_radius:.0f} m, confidence {payload.confidence:.2f})')
    elif event.type == EventType.QUALITY_CHANGED:
        print(f'Signal: {payload.strength.name} ({payload.score:.0f}/100) - {payload.description}')
    elif event.type == EventType.MEASUREMENT:
        print(f'Cell {payload.cell_id}: RSRP {payload.rsrp:.1f} dBm, '
              f'RSRQ {payload.rsrq:.1f} dB, SINR {payload.sinr:.1f} dB')
    elif event.type == EventType.CONNECTION_CHANGED:
        state = 'connected' if payload['connected'] else 'disconnected'
        identity = payload['identity']
        if identity is not None:
            print(f'Modem {state}: {identity.manufacturer} {identity.model} ({identity.firmware_version})')
        else:
            print(f'Modem {state}')
    else:
        print(f'Modem: {payload}')


def main(config_path: str = None, port: str = None, duration: float = None, quiet: bool = False):
    """Start the service and run until Ctrl+C or duration elapses"""

    params = load_config(config_path)
    if port:
        params.port = port
    setup_logging(params.log_level)

    service = CellularIntelligence.from_config(params)

    events = [EventType.HANDOVER_RECOMMENDED, EventType.LOCATION_UPDATED,
              EventType.QUALITY_CHANGED, EventType.CONNECTION_CHANGED, EventType.UNSOLICITED]
    if not quiet:
        events.append(EventType.MEASUREMENT)
    for event_type in events:
        service.event_bus.subscribe(event_type, print_event)

    print(f'\n=== Cellular Intelligence on {params.port} ===\n')

    try:
        service.start()
    except ModemConnectionError as e:
        print(f'Error: {e}')
        print('Available ports: ' + (', '.join(CellularIntelligence.available_modems()) or 'none'))
        return 1

    done = threading.Event()
    try:
        done.wait(duration)
    except KeyboardInterrupt:
        print('\nStopping...')
    finally:
        service.stop()

    print(f'\n--- Status after {service.cycle_count} cycles ---')
    print(service.get_status_summary())
    return 0


if __name__ == '__main__':
    import argparse

    parser = argparse.ArgumentParser(description='Run the cellular intelligence service')
    parser.add_argument('--config', type=str, default=None,
                       help='Path to YAML config (default: config.yaml at repo root)')
    parser.add_argument('--port', type=str, default=None,
                       help='Serial port override, e.g. /dev/ttyUSB2 or COM3')
    parser.add_argument('--duration', type=float, default=None,
                       help='Seconds to run before stopping (default: until Ctrl+C)')
    parser.add_argument('--quiet', action='store_true',
                       help='Do not print every measurement')
    parser.add_argument('--list-ports', action='store_true',
                       help='List available serial ports and exit')

    args = parser.parse_args()
    if args.list_ports:
        for device in CellularIntelligence.available_modems():
            print(device)
        sys.exit(0)
    sys.exit(main(config_path=args.config, port=args.port, duration=args.duration, quiet=args.quiet))
