"""
Runtime wiring for the operator console.

Two cooperating loops on one event loop:

- the reader task is the only reader of the AMI connection. Responses to
  our own actions are handed to the dispatcher; everything else goes into
  the bounded inbox.
- the consumer loop applies inbox notifications in arrival order, starts
  queued operator intents and then sleeps until woken or one tick elapses.

Connection loss is not recovered: the reader fails pending actions and
triggers shutdown.
"""

import argparse
import asyncio
import contextlib
import getpass
import signal
import sys
from typing import List, Optional

import yaml
from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest
from pydantic import ValidationError

from ami_console.actions import ActionDispatcher
from ami_console.ami_client import AMISession
from ami_console.config import AppConfig, load_config, validate_config
from ami_console.console import OperatorConsole, TextConsole
from ami_console.core.audit import AuditLog
from ami_console.core.classifier import ClassificationRules
from ami_console.core.event_applier import EventApplier
from ami_console.core.inbox import NotificationInbox
from ami_console.core.state_store import StateStore
from ami_console.errors import AuthenticationError, TransportError
from ami_console.logging_config import (
    bind_session_context,
    clear_session_context,
    configure_logging,
    get_logger,
)

logger = get_logger(__name__)

_MESSAGES = Counter(
    "ami_console_messages_total",
    "Inbound AMI messages by kind",
    ["kind"],
)


class Engine:
    """Owns the session, the state pipeline and the presentation boundary."""

    def __init__(self, config: AppConfig, *, session: Optional[AMISession] = None):
        self.config = config
        self.audit = AuditLog(config.console.audit_size)
        self.store = StateStore(tombstone_size=config.console.tombstone_size)
        self.rules = ClassificationRules.from_config(config.classification)
        self.applier = EventApplier(self.store, self.audit, direction_variable=self.rules.direction_variable)

        self.wakeup = asyncio.Event()
        self.shutdown_event = asyncio.Event()
        self.inbox = NotificationInbox(config.console.inbox_capacity, self.wakeup)

        self.session = session or AMISession.from_config(config.ami)
        self.dispatcher = ActionDispatcher(
            self.session,
            supervisor=config.supervisor,
            action_timeout=config.ami.action_timeout,
            audit=self.audit,
        )
        self.console = OperatorConsole(self.store, self.dispatcher, self.rules, self.audit, wakeup=self.wakeup)

        self.exit_reason: Optional[str] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._consumer_task: Optional[asyncio.Task] = None
        self._health_runner: Optional[web.AppRunner] = None
        self._stopped = False

    async def start(self) -> None:
        """Connect, log in and start both loops.

        Raises:
            TransportError: the switch could not be reached
            AuthenticationError: the login was rejected
        """
        ami = self.config.ami
        bind_session_context(ami_host=ami.host, ami_port=ami.port)
        await self.session.connect()
        await self.session.authenticate(ami.username or "", ami.secret or "")

        self._reader_task = asyncio.create_task(self._reader_loop())
        self._consumer_task = asyncio.create_task(self._consumer_loop())
        if self.config.health.enabled:
            await self._start_health_server()

        # initial picture of calls already in progress
        self.console.submit_intent("refresh")
        logger.info("Operator console started", inbox_capacity=self.inbox.capacity)

    async def _reader_loop(self) -> None:
        try:
            async for message in self.session.events():
                if self.dispatcher.route(message):
                    _MESSAGES.labels(kind="response").inc()
                    continue
                _MESSAGES.labels(kind="event" if "Event" in message else "other").inc()
                self.inbox.put(message)
        except TransportError as e:
            if not self.shutdown_event.is_set():
                logger.error("AMI connection lost", error=str(e))
                self.session.mark_failed(str(e))
                self.exit_reason = str(e)
                self.audit.record(f"Connection lost: {e}")
            self.dispatcher.fail_all(e)
        finally:
            self.shutdown_event.set()
            self.wakeup.set()

    async def _consumer_loop(self) -> None:
        tick = self.config.console.tick_seconds
        while not self.shutdown_event.is_set():
            self.drain_inbox()
            self.console.process_intents()
            await self.inbox.wait(tick)
        self.drain_inbox()

    def drain_inbox(self) -> int:
        """Apply every queued notification in arrival order."""
        applied = 0
        for message in self.inbox.drain():
            try:
                self.applier.apply(message)
                applied += 1
            except Exception as exc:
                logger.error("Failed to apply notification", event=message.get("Event"), error=str(exc), exc_info=True)
        return applied

    async def stop(self) -> None:
        """Stop both loops, log off and release the connection. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        self.shutdown_event.set()
        self.wakeup.set()

        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self.console.wait_idle(), timeout=self.config.ami.action_timeout)
        if self._consumer_task is not None:
            with contextlib.suppress(asyncio.TimeoutError, asyncio.CancelledError):
                await asyncio.wait_for(self._consumer_task, timeout=self.config.console.tick_seconds * 2)

        await self.session.close()

        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        self.dispatcher.fail_all(TransportError("session closed"))

        if self._health_runner is not None:
            await self._health_runner.cleanup()
            self._health_runner = None
        logger.info("Operator console stopped", reason=self.exit_reason or "operator quit")
        clear_session_context()

    # ------------------------------------------------------------------
    # Health endpoint
    # ------------------------------------------------------------------
    def build_health_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/live', self._live_handler)
        app.router.add_get('/ready', self._ready_handler)
        app.router.add_get('/metrics', self._metrics_handler)
        app.router.add_get('/snapshot', self._snapshot_handler)
        return app

    async def _start_health_server(self) -> None:
        """Start the aiohttp health/metrics server (127.0.0.1:15038 by default)."""
        host, port = self.config.health.host, self.config.health.port
        try:
            runner = web.AppRunner(self.build_health_app())
            await runner.setup()
            site = web.TCPSite(runner, host, port)
            await site.start()
            self._health_runner = runner
            logger.info("Health endpoint started", host=host, port=port)
        except OSError as exc:
            logger.error("Failed to start health endpoint", host=host, port=port, error=str(exc))

    async def _live_handler(self, request):
        """Liveness check: returns 200 if process is up."""
        return web.Response(text="ok", status=200)

    async def _ready_handler(self, request):
        """Readiness check: 200 only while logged in and not shutting down."""
        ready = self.session.is_authenticated and not self.shutdown_event.is_set()
        return web.json_response(
            {
                "ready": ready,
                "session": self.session.state.value,
                "failure_reason": self.session.failure_reason,
                "inbox_depth": len(self.inbox),
                "inbox_dropped": self.inbox.dropped,
                "pending_actions": self.dispatcher.pending_count,
            },
            status=200 if ready else 503,
        )

    async def _metrics_handler(self, request):
        """Expose Prometheus metrics."""
        data = generate_latest()
        # aiohttp forbids 'charset=' inside content_type arg; pass full header via headers.
        return web.Response(body=data, headers={"Content-Type": CONTENT_TYPE_LATEST})

    async def _snapshot_handler(self, request):
        return web.json_response(self.console.snapshot().to_dict())


async def run(config: AppConfig, *, interactive: bool = True, session: Optional[AMISession] = None) -> int:
    """Run until the operator quits, a signal arrives or the connection drops."""
    engine = Engine(config, session=session)
    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        loop.add_signal_handler(sig, engine.shutdown_event.set)
    try:
        return await _serve(engine, loop, interactive)
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)


async def _serve(engine: Engine, loop: asyncio.AbstractEventLoop, interactive: bool) -> int:
    try:
        await engine.start()
    except (TransportError, AuthenticationError) as e:
        logger.error("Startup failed", error=str(e))
        print(f"ami-console: {e}", file=sys.stderr)
        await engine.stop()
        return 1

    text = None
    if interactive:
        text = TextConsole(engine.console, on_quit=engine.shutdown_event.set)
        text.attach(loop)
    try:
        await engine.shutdown_event.wait()
    finally:
        if text is not None:
            text.detach(loop)
        await engine.stop()

    if engine.exit_reason:
        print(f"ami-console: {engine.exit_reason}", file=sys.stderr)
        return 1
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ami-console",
        description="Live operator console for the Asterisk Manager Interface",
    )
    parser.add_argument("host", nargs="?", help="AMI host (default: config / AMI_HOST / 127.0.0.1)")
    parser.add_argument("port", nargs="?", type=int, help="AMI port (default: 5038)")
    parser.add_argument("username", nargs="?", help="AMI username (default: AMI_USERNAME)")
    parser.add_argument("secret", nargs="?", help="AMI secret (default: AMI_SECRET, else prompted)")
    parser.add_argument("-c", "--config", default=None, help="YAML configuration file")
    parser.add_argument("--log-level", default=None, help="debug|info|warning|error")
    parser.add_argument(
        "--headless",
        action="store_true",
        help="no interactive prompt; run the state pipeline (and health endpoint) only",
    )
    return parser.parse_args(argv)


def cli(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, yaml.YAMLError, ValidationError) as e:
        print(f"ami-console: invalid configuration: {e}", file=sys.stderr)
        return 1
    config = config.with_ami_overrides(host=args.host, port=args.port, username=args.username, secret=args.secret)

    if not args.headless:
        # Prompt for whatever the environment and command line did not supply.
        username = config.ami.username or input("AMI username: ").strip()
        secret = config.ami.secret or getpass.getpass("AMI secret: ")
        config = config.with_ami_overrides(username=username or None, secret=secret or None)

    configure_logging(
        log_level=(args.log_level or config.logging.level).upper(),
        log_to_file=config.logging.to_file,
        log_file_path=config.logging.file_path,
    )

    errors, warnings = validate_config(config)
    if errors:
        logger.error("Configuration validation failed", errors=errors, warnings=warnings)
        for error in errors:
            print(f"ami-console: {error}", file=sys.stderr)
        return 1
    if warnings:
        logger.warning("Configuration warnings", warnings=warnings)

    try:
        return asyncio.run(run(config, interactive=not args.headless))
    except KeyboardInterrupt:
        return 0


def main() -> None:
    sys.exit(cli())


if __name__ == "__main__":
    main()
