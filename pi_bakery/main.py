import argparse
import signal
import sys
import threading

from pi_bakery.config.settings import ConfigurationError, load_settings
from pi_bakery.domain import StaticBootClientRegistry
from pi_bakery.logging import LoggerFactory, setup_logging
from pi_bakery.services.exports import ExportRegenerator, reload_exports
from pi_bakery.services.file_backend import LocalFileBackend
from pi_bakery.storage.command_runners import configure_command_timeout
from pi_bakery.storage.exceptions import BakeryError
from pi_bakery.storage.inventory import BakeformInventory
from pi_bakery.storage.mount import MountController
from pi_bakery.storage.partitions import PartitionMapper
from pi_bakery.web import server


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


def build_parser():
    parser = argparse.ArgumentParser(description="Network-boot disk image manager")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output")
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Load the image inventory and serve the HTTP API")
    serve.add_argument("--host", help="Listen address (default from settings)")
    serve.add_argument("--port", type=int, help="Listen port (default from settings)")

    exports = subparsers.add_parser("exports", help="Regenerate the NFS exports file")
    exports.add_argument("roots", nargs="*", metavar="ROOT", help="Boot client root locations")
    exports.add_argument("--reload", action="store_true", help="Run exportfs -ra afterwards")
    return parser


def serve(settings, host=None, port=None, stop_event=None):
    log = LoggerFactory.for_system()
    mounts = MountController()
    inventory = BakeformInventory.create(
        settings.image_folder,
        settings.image_mount_root,
        LocalFileBackend(settings.boot_root),
        mapper=PartitionMapper(kpartx_path=settings.kpartx_path),
        mounts=mounts,
    )
    stop_event = stop_event or threading.Event()

    def request_stop(signum, _frame):
        log.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    server.start_server(inventory, host=host or settings.host, port=port or settings.port)
    try:
        stop_event.wait()
    finally:
        server.stop_server()
        failed = inventory.unmount_all()
        if failed:
            log.error(f"Bakeforms left mounted at shutdown: {', '.join(failed)}")
        leftover = mounts.mounted_paths
        if leftover:
            log.error(f"Mount points still in use: {', '.join(sorted(leftover))}")
    return EXIT_OK


def regenerate_exports(settings, roots, reload=False):
    registry = StaticBootClientRegistry.from_root_locations(roots)
    ExportRegenerator(settings.exports_path).regenerate(registry)
    if reload:
        reload_exports()
    return EXIT_OK


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace)
    log = LoggerFactory.for_system()

    try:
        settings = load_settings()
    except ConfigurationError as error:
        log.critical(f"Configuration error: {error}")
        return EXIT_CONFIG
    configure_command_timeout(settings.command_timeout_seconds)

    try:
        if args.command == "exports":
            return regenerate_exports(settings, args.roots, reload=args.reload)
        return serve(
            settings,
            host=getattr(args, "host", None),
            port=getattr(args, "port", None),
        )
    except (BakeryError, OSError) as error:
        log.error(f"{type(error).__name__}: {error}")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
