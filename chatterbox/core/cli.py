# chatterbox/core/cli.py
"""
CLI for the chatterbox worker, schema initialization and config checks.

Module path resolution follows Celery's approach:
1. User provides dotted module path: `chatterbox worker app.jobs:app`
2. User is responsible for PYTHONPATH / running from correct directory
3. Convenience: if cwd has pyproject.toml, we add cwd to sys.path
"""

import argparse
import asyncio
import importlib
import logging
import os
import signal
import sys
from typing import Optional

from chatterbox.core.app import Chatterbox
from chatterbox.core.errors import (
    ChatterboxError,
    ConfigurationError,
    ErrorCode,
    ValidationReport,
)
from chatterbox.core.logging import get_logger, set_default_level
from chatterbox.core.types.result import is_err
from chatterbox.core.utils.imports import import_file_path, setup_sys_path_from_cwd
from chatterbox.core.worker.config import WorkerConfig

ENV_PREFIX = 'CHATTERBOX_WORKER_'


def _resolve_module_argument(args: argparse.Namespace) -> str:
    """Return module path from --module or positional, error if missing."""
    module_path = getattr(args, 'module', None) or getattr(args, 'module_pos', None)
    if not module_path:
        raise ConfigurationError(
            message='module path is required',
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=['no --module flag or positional module argument provided'],
            help_text=(
                'provide module path in one of these formats:\n'
                '  chatterbox worker app.jobs:app  (recommended)\n'
                '  chatterbox worker app/jobs.py:app  (file path)\n'
                '  chatterbox worker app.jobs  (auto-discover app variable)'
            ),
        )
    return module_path


def _parse_locator(locator: str) -> tuple[str, str | None]:
    """
    Parse a module locator into (module_path, attribute_name).

    - "app.jobs:app" -> ("app.jobs", "app")
    - "app/jobs.py" -> ("app/jobs.py", None)
    """
    if ':' in locator:
        module_part, attr = locator.rsplit(':', 1)
        return (module_part, attr)
    return (locator, None)


def _is_file_path(path: str) -> bool:
    return path.endswith('.py') or os.path.sep in path or '/' in path


def discover_app(module_locator: str) -> tuple[Chatterbox, str]:
    """
    Import a module and find its Chatterbox instance.

    Returns:
        (app_instance, variable_name)
    """
    logger = get_logger('cli')

    project_root = setup_sys_path_from_cwd()
    if project_root:
        logger.info(f'Added project root to sys.path: {project_root}')

    module_path, attr_name = _parse_locator(module_locator)

    if _is_file_path(module_path):
        if not module_path.endswith('.py'):
            module_path += '.py'
        file_path = os.path.realpath(module_path)
        if not os.path.exists(file_path):
            raise ConfigurationError(
                message=f"module file not found: '{module_locator}'",
                code=ErrorCode.WORKER_INVALID_LOCATOR,
                notes=[f'resolved to {file_path}'],
                help_text='use a dotted module path (app.jobs:app) or an existing file path',
            )
        module = import_file_path(file_path)
        module_name = module.__name__
    else:
        try:
            module = importlib.import_module(module_path)
        except ModuleNotFoundError as e:
            raise ConfigurationError(
                message=f'module not found: {module_path}',
                code=ErrorCode.WORKER_INVALID_LOCATOR,
                notes=[str(e), f'sys.path: {sys.path[:5]}...'],
                help_text=(
                    'ensure you are running from the correct directory\n'
                    'or set PYTHONPATH to include your project root'
                ),
            )
        module_name = module_path

    if attr_name:
        obj = getattr(module, attr_name, None)
        if not isinstance(obj, Chatterbox):
            got = 'nothing' if obj is None else type(obj).__name__
            raise ConfigurationError(
                message=f"'{attr_name}' in module '{module_name}' is not a Chatterbox instance",
                code=ErrorCode.WORKER_INVALID_LOCATOR,
                notes=[f'got {got}'],
            )
        app, var_name = obj, attr_name
    else:
        found = [
            (obj, name)
            for name in dir(module)
            if not name.startswith('_') and isinstance(obj := getattr(module, name), Chatterbox)
        ]
        if len(found) != 1:
            names = [name for _, name in found]
            raise ConfigurationError(
                message=f'expected one Chatterbox instance in {module_name}, found {len(found)}',
                code=ErrorCode.WORKER_INVALID_LOCATOR,
                notes=[f'candidates: {names}'] if names else [],
                help_text='specify the variable name: module.path:variable',
            )
        app, var_name = found[0]

    logger.info(f"Discovered chatterbox '{var_name}' from {module_name}")
    return app, var_name


def setup_logging(loglevel: str) -> None:
    """Configure logging level globally."""
    level = getattr(logging, loglevel.upper(), logging.INFO)
    set_default_level(level)

    for name in logging.Logger.manager.loggerDict:
        if isinstance(name, str) and name.startswith('chatterbox.'):
            lgr = logging.getLogger(name)
            lgr.setLevel(level)
            for handler in lgr.handlers:
                handler.setLevel(level)


def _env_number(name: str, cast: type, default: Optional[float]) -> Optional[float]:
    raw = os.environ.get(f'{ENV_PREFIX}{name}')
    if raw is None or raw == '':
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(
            message=f'invalid {ENV_PREFIX}{name}',
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=[f'got {raw!r}'],
        )


def build_worker_config(args: argparse.Namespace) -> WorkerConfig:
    """CLI flags win over CHATTERBOX_WORKER_* environment variables."""
    concurrency = args.concurrency
    if concurrency is None:
        concurrency = _env_number('CONCURRENCY', int, 2)
    poll_interval = args.poll_interval
    if poll_interval is None:
        poll_interval = _env_number('POLL_INTERVAL', float, 5.0)
    max_idle = args.max_idle
    if max_idle is None:
        max_idle = _env_number('MAX_IDLE', float, None)
    return WorkerConfig(
        concurrency=int(concurrency),
        poll_interval_seconds=float(poll_interval),
        max_idle_seconds=max_idle,
        loglevel=getattr(logging, args.loglevel.upper(), logging.INFO),
    )


def _discover_or_exit(args: argparse.Namespace) -> Chatterbox:
    logger = get_logger('cli')
    try:
        app, _var_name = discover_app(_resolve_module_argument(args))
    except ChatterboxError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f'Failed to discover app: {e}')
        sys.exit(1)
    return app


def worker_command(args: argparse.Namespace) -> None:
    """Handle worker command."""
    logger = get_logger('cli')

    setup_logging(args.loglevel)
    logger.info(f'Starting chatterbox worker with loglevel={args.loglevel}')

    app = _discover_or_exit(args)
    try:
        worker_config = build_worker_config(args)
        worker = app.create_worker(worker_config)
    except ChatterboxError as e:
        logger.error(str(e))
        sys.exit(1)
    app.config.log_config(logger)

    async def run_worker() -> None:
        initialized = await app.ensure_schema()
        if is_err(initialized):
            logger.error(f'Failed to initialize database schema: {initialized.err_value.message}')
            raise RuntimeError(initialized.err_value.message)

        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.info('Received interrupt signal, stopping worker...')
            worker.request_stop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                pass

        try:
            await worker.run_forever()
        finally:
            await app.close()

    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info('Worker interrupted by user')
    except Exception as e:
        logger.error(f'Worker failed: {e}')
        sys.exit(1)


def init_db_command(args: argparse.Namespace) -> None:
    """Handle init-db command: create tables and indexes."""
    logger = get_logger('cli')
    setup_logging(args.loglevel)
    app = _discover_or_exit(args)

    async def run_init() -> None:
        try:
            initialized = await app.ensure_schema()
        finally:
            await app.close()
        if is_err(initialized):
            raise RuntimeError(initialized.err_value.message)

    try:
        asyncio.run(run_init())
    except Exception as e:
        logger.error(f'Schema initialization failed: {e}')
        sys.exit(1)
    print('ok: schema initialized')


def check_command(args: argparse.Namespace) -> None:
    """Handle check command: validate app configuration without starting services."""
    setup_logging(args.loglevel)
    app = _discover_or_exit(args)

    async def run_check() -> list[ChatterboxError]:
        try:
            return await app.check(live=args.live)
        finally:
            await app.close()

    errors = asyncio.run(run_check())
    if errors:
        report = ValidationReport('check')
        for error in errors:
            report.add(error)
        print(report.format_rust_style(), file=sys.stderr)
        sys.exit(1)
    print(f'ok: all validations passed\n  {len(app.handlers)} handler(s) registered')
    sys.exit(0)


def _add_common_arguments(parser: argparse.ArgumentParser, default_level: str) -> None:
    parser.add_argument(
        '-m',
        '--module',
        dest='module',
        help='Module path (e.g., app.jobs:app)',
    )
    parser.add_argument(
        'module_pos',
        nargs='?',
        help='Module path (e.g., app.jobs:app)',
    )
    parser.add_argument(
        '--loglevel',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        default=default_level,
        type=str.upper,
        help=f'Logging level (default: {default_level})',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='chatterbox',
        description='Chatterbox background jobs - worker and schema management',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create the schema once per database
  chatterbox init-db app.jobs:app

  # Run a worker with four concurrent poll loops
  chatterbox worker app.jobs:app --concurrency 4

  # Validate configuration, including broker connectivity
  chatterbox check app.jobs:app --live
""",
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    worker_parser = subparsers.add_parser('worker', help='Start a chatterbox worker')
    _add_common_arguments(worker_parser, 'INFO')
    worker_parser.add_argument(
        '--concurrency',
        type=int,
        default=None,
        help=f'Concurrent poll loops (env {ENV_PREFIX}CONCURRENCY, default: 2)',
    )
    worker_parser.add_argument(
        '--poll-interval',
        type=float,
        default=None,
        help=f'Seconds between polls of an empty queue (env {ENV_PREFIX}POLL_INTERVAL, default: 5)',
    )
    worker_parser.add_argument(
        '--max-idle',
        type=float,
        default=None,
        help=f'Stop after this many idle seconds (env {ENV_PREFIX}MAX_IDLE, default: never)',
    )

    init_parser = subparsers.add_parser('init-db', help='Create tables and indexes')
    _add_common_arguments(init_parser, 'INFO')

    check_parser = subparsers.add_parser(
        'check', help='Validate app configuration without starting services'
    )
    _add_common_arguments(check_parser, 'WARNING')
    check_parser.add_argument(
        '--live',
        action='store_true',
        default=False,
        help='Also check broker connectivity (SELECT 1)',
    )
    return parser


def main() -> None:
    """Main CLI entry point."""
    parser = build_parser()
    try:
        args = parser.parse_args()
        match args.command:
            case 'worker':
                worker_command(args)
            case 'init-db':
                init_db_command(args)
            case 'check':
                check_command(args)
            case _:
                parser.print_help()
                sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()
