import asyncio
import logging
import sys

from audit import DeviceListError, build_targets, default_fields, load_device_list, run_audit
from cli import parse_args
from discovery import format_result, probe
from ip_utils import InvalidAddressError, MalformedRangeError, validate_address
from param import (
    EXIT_DEVICE_FAILURES,
    EXIT_INVALID_INPUT,
    EXIT_OK,
    EXIT_OUTPUT_FOLDER,
)
from report_store import create_report_folder


def setup_logging(args):
    log_kwargs = {
        "level": logging.DEBUG if args.debug else logging.WARNING,
        "format": "%(asctime)s - %(levelname)s - %(message)s",
        "force": True,
    }
    if args.logfile:
        log_kwargs["level"] = logging.DEBUG if args.debug else logging.INFO
        log_kwargs["filename"] = args.logfile
        log_kwargs["filemode"] = "a"
    else:
        log_kwargs["stream"] = sys.stderr
    logging.basicConfig(**log_kwargs)


def run_scan(args):
    print(f"Probing for {args.scan_duration:g} seconds")

    def on_result(_result):
        sys.stdout.write(".")
        sys.stdout.flush()

    try:
        results = asyncio.run(probe(args.scan_duration, on_result=on_result))
    except OSError as err:
        logging.error("Discovery probe failed: %s", err)
        print(f"ERROR - discovery probe failed: {err}")
        return EXIT_INVALID_INPUT
    sys.stdout.write("\n")
    for item in results:
        print(format_result(item))
    print(f"Total {len(results)}")
    return EXIT_OK


def collect_targets(args):
    defaults = default_fields(args.port, args.username, args.password)
    if args.filename:
        return load_device_list(args.filename, defaults, carry_over=not args.strict_list)
    targets = build_targets(
        args.ipaddress, defaults["port"], defaults["username"], defaults["password"]
    )
    for target in targets:
        valid, err_msg = validate_address(target.address)
        if not valid:
            raise InvalidAddressError(err_msg)
    return targets


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args)

    if args.scan:
        return run_scan(args)

    try:
        targets = collect_targets(args)
    except (DeviceListError, InvalidAddressError, MalformedRangeError) as err:
        logging.error("%s", err)
        print(f"ERROR - {err}")
        return EXIT_INVALID_INPUT

    try:
        folder = create_report_folder(args.output_dir)
    except OSError as err:
        logging.critical("Unable to create report folder: %s", err)
        print("Unable to create log folder")
        return EXIT_OUTPUT_FOLDER

    logging.info("Auditing %d devices into %s", len(targets), folder)
    results = asyncio.run(run_audit(targets, folder, connect_timeout=args.timeout))

    failed = [result for result in results if not result.ok]
    for result in failed:
        logging.warning(
            "%s:%s finished with status %s (%s)",
            result.target.address,
            result.target.port,
            result.status,
            result.error,
        )
    return EXIT_DEVICE_FAILURES if failed else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
