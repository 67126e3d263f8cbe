import argparse
import ctypes
import json
import logging
import signal
import sys

from .config import (CONFIG_FILE, Config, MODE_DEVICE_CONTROLS,
                     MODE_FAST_DEVICES)
from .errors import (ConfigurationMissing, KernelError, LanekeeperError,
                     LockContention, TopologyFailure, UpstreamUnavailable)
from .logs import OperationLog, setup_logging
from .memkernel import DryRunKernel
from .netlink import NetlinkKernel
from .policy import PolicyClient
from .provision import provision
from .reconciler import PASS_FULL, Reconciler
from .session import Session

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_LOCAL = 1     # missing configuration, lock held elsewhere
EXIT_FAILED = 2    # lane tree or control plane unusable


def build_parser():
    parser = argparse.ArgumentParser(
        prog='lanekeeper',
        description='Household bandwidth lanes and DNS filtering for a '
                    'Linux router.',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    parser.add_argument('-c', '--config', default=CONFIG_FILE,
                        help='JSON configuration file.')
    parser.add_argument('--mode',
                        choices=[MODE_DEVICE_CONTROLS, MODE_FAST_DEVICES],
                        help='Override the policy mode from the config file.')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Debug logging.')
    action = parser.add_mutually_exclusive_group()
    action.add_argument('--daemon', action='store_true',
                        help='Keep running: periodic passes plus a guest pass '
                        'whenever the lease file changes.')
    action.add_argument('--status', action='store_true',
                        help='Print the managed kernel state and exit.')
    action.add_argument('--reset', action='store_true',
                        help='Remove every managed rule and the lane tree.')
    action.add_argument('--apply-guest', metavar='IP',
                        help='Put one device into the guest lane now.')
    action.add_argument('--refresh-critical', action='store_true',
                        help='Re-resolve critical service hosts and exit.')
    action.add_argument('--setup', metavar='EMAIL',
                        help='Register this router with the control plane.')
    parser.add_argument('--mac', help='MAC address for --apply-guest when the '
                        'device holds no lease.')
    parser.add_argument('--test', action='store_true',
                        help='Dry run: read the real kernel state, log every '
                        'change instead of making it.')
    parser.add_argument('--force', action='store_true',
                        help='Ignore cached guest handles and reinstall.')
    return parser


def set_process_name(name):
    try:
        libc = ctypes.cdll.LoadLibrary('libc.so.6')
        libc.prctl(15, name.encode('utf-8')[:15], 0, 0, 0)
    except (OSError, AttributeError):
        pass


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose or args.test)
    set_process_name('lanekeeper')

    try:
        cfg = Config(args.config, provisioning=bool(args.setup))
    except ConfigurationMissing as e:
        logger.critical(f'⚠️ {e}')
        return EXIT_LOCAL
    except ValueError as e:
        logger.critical(f'⚠️ Invalid configuration: {e}')
        return EXIT_LOCAL
    if args.mode: cfg.mode = args.mode
    setup_logging(cfg, verbose=args.verbose or args.test)

    client = PolicyClient(cfg, dry_run=args.test)
    if args.setup:
        try:
            provision(cfg, client, args.setup)
        except (UpstreamUnavailable, ValueError) as e:
            logger.critical(f'❌ Setup failed: {e}')
            return EXIT_FAILED
        return EXIT_OK

    session = Session(cfg.state_file)
    if args.test:
        logger.info('🧪 TEST MODE: no kernel or state changes will be made')
        session.path = None

    port = None
    try:
        port = NetlinkKernel()
        if args.test:
            port = DryRunKernel(port, (cfg.lan_interface, cfg.wan_interface))
        rec = Reconciler(cfg, port, client=client, session=session,
                         oplog=OperationLog())
        return run(args, rec)
    except LockContention as e:
        logger.error(f'🔒 {e}')
        return EXIT_LOCAL
    except ConfigurationMissing as e:
        logger.critical(f'⚠️ {e}')
        return EXIT_LOCAL
    except (TopologyFailure, KernelError) as e:
        logger.critical(f'❌ {e}')
        return EXIT_FAILED
    except LanekeeperError as e:
        logger.error(f'❌ {e}')
        return EXIT_FAILED
    finally:
        if port: port.close()


def run(args, rec):
    if args.refresh_critical:
        ips = rec.critical.ips(refresh=True)
        rec.session.save()
        print(' '.join(sorted(ips)))
        return EXIT_OK

    if args.status:
        print(json.dumps(rec.status(), indent=2, sort_keys=True))
        return EXIT_OK

    if args.reset:
        rec.reset()
        return EXIT_OK

    if args.apply_guest:
        try:
            rec.apply_guest(args.apply_guest, args.mac)
        except ValueError as e:
            logger.error(f'⚠️ {e}')
            return EXIT_LOCAL
        return EXIT_OK

    if args.daemon:
        def graceful_exit(signum, frame):
            logger.info(f'⚠️ Received signal: {signal.Signals(signum).name}')
            sys.exit(0)
        def handle_reload(signum, frame):
            '''SIGUSR1 runs a full pass right away.'''
            rec.trigger(PASS_FULL)
        signal.signal(signal.SIGINT, graceful_exit)
        signal.signal(signal.SIGTERM, graceful_exit)
        signal.signal(signal.SIGHUP, graceful_exit)
        signal.signal(signal.SIGUSR1, handle_reload)
        rec.serve(force=args.force)
        return EXIT_OK

    report = rec.run_pass(force=args.force)
    if report.upstream_error:
        return EXIT_FAILED
    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
