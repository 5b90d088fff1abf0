import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

import uvicorn

from config import config, setup_logging
from core.errors import DispatchServiceError
from core.locator import AmbulanceLocator
from inspect_registry import export_registry
from api.rest import DispatchServiceAPI, app
from models import AmbulanceRegistration, DispatchResult, EmergencyRequest, GeoPoint

SEED_FILE = Path(__file__).resolve().parent / "data" / "seed_ambulances.json"


class DispatchCLI:
    """Command-line interface for the ambulance dispatch service."""

    def __init__(self, service: DispatchServiceAPI = None):
        self.service = service or DispatchServiceAPI.from_config(config)
        self.registry = self.service.registry
        self.locator: AmbulanceLocator = self.service.locator
        self.dispatcher = self.service.dispatcher

    def register(self, registration: AmbulanceRegistration) -> bool:
        """Register an ambulance."""
        try:
            record = self.registry.register(registration)
        except DispatchServiceError as e:
            print(f"Error: {e.message}")
            for field, problem in getattr(e, "fields", {}).items():
                print(f"  {field}: {problem}")
            return False

        print(f"Registered {record.id}: {record.name} ({record.vehicle_number}) "
              f"at {record.location.latitude:.5f}, {record.location.longitude:.5f}")
        return True

    def list_ambulances(self):
        """Print every registered ambulance."""
        ambulances = self.registry.list_all()
        if not ambulances:
            print("No ambulances registered")
            return

        print(f"\n{len(ambulances)} registered ambulance(s)\n")
        print("-" * 80)
        for record in ambulances:
            print(f"{record.id}  {record.name} [{record.vehicle_type.value}]")
            print(f"   Vehicle: {record.vehicle_number}")
            print(f"   Driver: {record.driver_name or '-'} ({record.driver_contact})")
            print(f"   Location: {record.location.latitude:.5f}, {record.location.longitude:.5f}")
            print("-" * 40)

    def locate(self, latitude: float, longitude: float, radius_km: float) -> List:
        """Print ambulances near a point, nearest first."""
        try:
            located = self.locator.locate(GeoPoint(latitude=latitude, longitude=longitude), radius_km)
        except DispatchServiceError as e:
            print(f"Error: {e.message}")
            return []

        if not located:
            print(f"No ambulance found within {radius_km:g} km")
            return []

        print(f"\nFound {len(located)} ambulance(s) within {radius_km:g} km\n")
        for i, (record, distance_km) in enumerate(located, 1):
            print(f"{i}. {record.name} ({record.vehicle_number}) - {distance_km:.2f} km")
        return located

    async def dispatch(
        self,
        latitude: float,
        longitude: float,
        callback_phone: Optional[str] = None,
        radius_km: Optional[float] = None
    ) -> Optional[DispatchResult]:
        """Run an emergency dispatch and print the outcome."""
        request = EmergencyRequest(
            requester_location=GeoPoint(latitude=latitude, longitude=longitude),
            callback_phone=callback_phone,
            radius_km=radius_km
        )

        try:
            result = await self.dispatcher.dispatch(request)
        except DispatchServiceError as e:
            print(f"Error: {e.message}")
            return None
        finally:
            await self.service.gateway.close()

        self.print_dispatch_result(result)
        return result

    def print_dispatch_result(self, result: DispatchResult):
        print(f"\nDispatch {result.dispatch_id}: {result.message}")
        print("-" * 80)
        for outcome in result.candidates:
            status = outcome.notification_status.value
            if outcome.reason:
                status = f"{status} ({outcome.reason})"
            print(f"{outcome.name} ({outcome.vehicle_number}) - {outcome.distance_km:.2f} km - {status}")

        summary = result.summary
        print(f"\nNotified: {summary.notified}, failed: {summary.failed}, skipped: {summary.skipped}")

    def get_stats(self):
        """Print registry statistics."""
        stats = self.registry.get_stats()

        print(f"\nRegistry Statistics:")
        print(f"Total ambulances: {stats.total_ambulances}")
        print(f"Indexed cells: {stats.indexed_cells}")
        print(f"Last updated: {stats.last_updated}")

        print(f"\nVehicle types:")
        for vehicle_type, count in stats.vehicle_types.items():
            print(f"  {vehicle_type}: {count}")

    def rebuild_index(self):
        cells = self.registry.rebuild_index()
        print(f"Index rebuilt: {cells} cells")

    def seed(self, seed_file: Path = SEED_FILE, clear: bool = False) -> int:
        """Load sample ambulances from a JSON file."""
        with open(seed_file, "r", encoding="utf-8") as f:
            entries = json.load(f)

        if clear:
            self.registry.clear()
            print("Cleared existing ambulance data")

        count = 0
        for entry in entries:
            if self.register(AmbulanceRegistration.model_validate(entry)):
                count += 1

        print(f"Seeded {count} ambulance(s) from {seed_file}")
        return count

    def export(self, output_dir: str):
        paths = export_registry(self.registry, output_dir)
        for path in paths:
            print(f"Exported: {path}")


def create_arg_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        description="Ambulance Dispatch - proximity lookup and emergency notification",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
            Examples:
            # Load the sample fleet
            python main.py seed --clear

            # Register an ambulance
            python main.py register "City Emergency" DL01AB1234 9876543210 28.62 77.21 --driver-name "Rajesh Kumar"

            # Ambulances within 5 km
            python main.py locate 28.6139 77.2090

            # Dry-run dispatch (no calls placed)
            python main.py dispatch 28.6139 77.2090

            # Live dispatch
            python main.py dispatch 28.6139 77.2090 --callback-phone +919876543210

            # Start API server
            python main.py server
                    """
                )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Server command
    server_parser = subparsers.add_parser('server', help='Start API server')
    server_parser.add_argument('--host', default=config.api_host, help='Server host')
    server_parser.add_argument('--port', type=int, default=config.api_port, help='Server port')
    server_parser.add_argument('--reload', action='store_true', help='Enable auto-reload')

    # Register command
    register_parser = subparsers.add_parser('register', help='Register an ambulance')
    register_parser.add_argument('name', help='Service or vehicle name')
    register_parser.add_argument('vehicle_number', help='Vehicle number')
    register_parser.add_argument('driver_contact', help='Driver phone number')
    register_parser.add_argument('latitude', type=float, help='Latitude')
    register_parser.add_argument('longitude', type=float, help='Longitude')
    register_parser.add_argument('--driver-name', help='Driver name')
    register_parser.add_argument('--vehicle-type', choices=['basic', 'advanced', 'patient-transport', 'neonatal', 'air'],
                                 help='Vehicle type')

    # List command
    subparsers.add_parser('list', help='List registered ambulances')

    # Locate command
    locate_parser = subparsers.add_parser('locate', help='Find ambulances near a point')
    locate_parser.add_argument('latitude', type=float, help='Latitude')
    locate_parser.add_argument('longitude', type=float, help='Longitude')
    locate_parser.add_argument('--radius', type=float, default=config.default_radius_km, help='Radius in km')

    # Dispatch command
    dispatch_parser = subparsers.add_parser('dispatch', help='Send an emergency call to nearby ambulances')
    dispatch_parser.add_argument('latitude', type=float, help='Latitude')
    dispatch_parser.add_argument('longitude', type=float, help='Longitude')
    dispatch_parser.add_argument('--callback-phone', help='Patient phone; calls are only placed when given')
    dispatch_parser.add_argument('--radius', type=float, help='Radius in km')

    # Stats command
    subparsers.add_parser('stats', help='Show registry statistics')

    # Index command
    subparsers.add_parser('rebuild-index', help='Drop and recreate the spatial index')

    # Seed command
    seed_parser = subparsers.add_parser('seed', help='Load sample ambulances')
    seed_parser.add_argument('--file', default=str(SEED_FILE), help='Seed JSON file')
    seed_parser.add_argument('--clear', action='store_true', help='Remove existing ambulances first')

    # Export command
    export_parser = subparsers.add_parser('export', help='Export the registry to JSON and CSV')
    export_parser.add_argument('--output', default='registry_export', help='Output directory')

    return parser


def run_server(host: str = '127.0.0.1', port: int = 8000, reload: bool = False):
    """Run the API server synchronously."""
    print(f"Starting Ambulance Dispatch API server on {host}:{port}")
    print(f"API documentation available at: http://{host}:{port}/docs")

    if reload:
        uvicorn.run("api.rest:app", host=host, port=port, reload=True)
    else:
        uvicorn.run(app, host=host, port=port)


async def main(args: argparse.Namespace, cli: DispatchCLI = None) -> int:
    """Run one CLI command. Returns the process exit code."""
    cli = cli or DispatchCLI()

    if args.command == 'register':
        registration = AmbulanceRegistration(
            name=args.name,
            vehicle_number=args.vehicle_number,
            driver_contact=args.driver_contact,
            driver_name=args.driver_name,
            latitude=args.latitude,
            longitude=args.longitude,
            vehicle_type=args.vehicle_type
        )
        return 0 if cli.register(registration) else 1

    elif args.command == 'list':
        cli.list_ambulances()

    elif args.command == 'locate':
        cli.locate(args.latitude, args.longitude, args.radius)

    elif args.command == 'dispatch':
        result = await cli.dispatch(args.latitude, args.longitude, args.callback_phone, args.radius)
        return 0 if result is not None else 1

    elif args.command == 'stats':
        cli.get_stats()

    elif args.command == 'rebuild-index':
        cli.rebuild_index()

    elif args.command == 'seed':
        cli.seed(Path(args.file), clear=args.clear)

    elif args.command == 'export':
        cli.export(args.output)

    return 0


def cli_entry():
    parser = create_arg_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    setup_logging()

    try:
        # Handle server command synchronously before async context
        if args.command == 'server':
            run_server(args.host, args.port, args.reload)
            sys.exit(0)

        sys.exit(asyncio.run(main(args)))

    except KeyboardInterrupt:
        print("\nShutting down...")
    except DispatchServiceError as e:
        print(f"Fatal error: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    cli_entry()
