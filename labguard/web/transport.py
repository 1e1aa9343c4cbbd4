"""Listener startup and ordered graceful shutdown.

The bootstrap decides between HTTPS and plain HTTP, provisions the
certificate when HTTPS is wanted, starts the safety services (the startup
integrity check completes before any listener is bound), and then serves the
API with uvicorn. When HTTPS is on and the redirect is enabled, a second
plain-HTTP listener answers every request with a 301 to the secure port.

On SIGINT or SIGTERM shutdown runs in a fixed order:

1. stop the backup and integrity timers
2. close the redirect listener
3. close the primary listener (in-flight requests finish)
4. wait for in-flight backup/integrity runs, then close the store
5. return
"""

import asyncio
import contextlib
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Tuple

import structlog
import uvicorn
from starlette.requests import Request
from starlette.responses import RedirectResponse

import labguard
from labguard.core.exceptions import CertificateGenerationError, ConfigurationError
from labguard.services import CertificateProvisioner, SafetyServices, build_services

from .main import create_app
from .settings import APISettings, get_settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TransportPlan:
    """How the listeners will be bound."""

    mode: str
    host: str
    port: int
    redirect_port: Optional[int] = None
    cert_path: Optional[Path] = None
    key_path: Optional[Path] = None
    fallback_reason: Optional[str] = None

    @property
    def https(self) -> bool:
        return self.mode == "https"

    @property
    def redirect(self) -> bool:
        return self.redirect_port is not None


async def plan_transport(settings: APISettings, provisioner: CertificateProvisioner) -> TransportPlan:
    """
    Decide the transport mode, provisioning the certificate if HTTPS is wanted.

    A certificate that cannot be generated downgrades the server to plain
    HTTP on the primary port instead of aborting startup.
    """
    if not settings.use_https:
        logger.info("transport_http", port=settings.port, environment=settings.environment)
        return TransportPlan(mode="http", host=settings.host, port=settings.port)

    loop = asyncio.get_running_loop()
    try:
        bundle = await loop.run_in_executor(None, provisioner.ensure)
    except CertificateGenerationError as e:
        logger.warning(
            "transport_https_unavailable",
            error=str(e),
            fallback="http",
            port=settings.port,
        )
        return TransportPlan(
            mode="http",
            host=settings.host,
            port=settings.port,
            fallback_reason=str(e),
        )

    return TransportPlan(
        mode="https",
        host=settings.host,
        port=settings.port,
        redirect_port=settings.http_port if settings.http_redirect else None,
        cert_path=bundle.cert_path,
        key_path=bundle.key_path,
    )


def create_redirect_app(secure_port: int) -> Callable[..., Any]:
    """
    ASGI app that permanently redirects every request to HTTPS.

    ``http://host:80/path?q=1`` becomes ``https://host:<secure_port>/path?q=1``.
    """

    async def redirect_app(scope: dict, receive: Callable, send: Callable) -> None:
        if scope["type"] == "lifespan":
            while True:
                message = await receive()
                if message["type"] == "lifespan.startup":
                    await send({"type": "lifespan.startup.complete"})
                elif message["type"] == "lifespan.shutdown":
                    await send({"type": "lifespan.shutdown.complete"})
                    return

        if scope["type"] != "http":
            return

        request = Request(scope)
        host = request.url.hostname or "localhost"
        if ":" in host:
            host = f"[{host}]"
        target = request.url.replace(scheme="https", netloc=f"{host}:{secure_port}")
        response = RedirectResponse(str(target), status_code=301)
        await response(scope, receive, send)

    return redirect_app


class ManagedServer(uvicorn.Server):
    """uvicorn server whose signal handling belongs to the bootstrap."""

    def install_signal_handlers(self) -> None:
        pass

    def capture_signals(self) -> contextlib.AbstractContextManager:
        return contextlib.nullcontext()


class TransportBootstrap:
    """Starts services and listeners, and stops them in order.

    Attributes:
        settings: Transport settings
        services: Safety services owned by this bootstrap
        plan: Chosen transport, available once :meth:`serve` has planned it
    """

    def __init__(
        self,
        settings: APISettings,
        services: SafetyServices,
        server_factory: Callable[[uvicorn.Config], uvicorn.Server] = ManagedServer,
    ) -> None:
        self.settings = settings
        self.services = services
        self.server_factory = server_factory
        self.plan: Optional[TransportPlan] = None
        self._primary: Optional[Tuple[uvicorn.Server, asyncio.Task]] = None
        self._redirect: Optional[Tuple[uvicorn.Server, asyncio.Task]] = None
        self._stop_event = asyncio.Event()
        self._shutdown_started = False
        self._shutdown_done = asyncio.Event()

    def request_shutdown(self, sig: Optional[signal.Signals] = None) -> None:
        """Ask :meth:`serve` to begin the ordered shutdown."""
        logger.info("shutdown_requested", signal=sig.name if sig else None)
        self._stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig)
            except (NotImplementedError, RuntimeError):
                # Not on the main thread, or not supported on this platform
                logger.debug("signal_handler_unavailable", signal=sig.name)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    def _start_listener(self, config: uvicorn.Config, name: str) -> Tuple[uvicorn.Server, asyncio.Task]:
        server = self.server_factory(config)
        task = asyncio.get_running_loop().create_task(server.serve(), name=f"listener:{name}")
        return server, task

    async def serve(self, install_signal_handlers: bool = True) -> None:
        """Run until a shutdown is requested, then shut down in order."""
        self.plan = await plan_transport(self.settings, self.services.certificates)

        await self.services.start()

        app = create_app(self.services, self.settings)
        app.state.https = self.plan.https

        primary_config = uvicorn.Config(
            app,
            host=self.plan.host,
            port=self.plan.port,
            ssl_certfile=str(self.plan.cert_path) if self.plan.cert_path else None,
            ssl_keyfile=str(self.plan.key_path) if self.plan.key_path else None,
            log_config=None,
            lifespan="on",
        )
        self._primary = self._start_listener(primary_config, "primary")

        if self.plan.redirect:
            redirect_config = uvicorn.Config(
                create_redirect_app(self.plan.port),
                host=self.plan.host,
                port=self.plan.redirect_port,
                log_config=None,
                lifespan="off",
            )
            self._redirect = self._start_listener(redirect_config, "redirect")

        if install_signal_handlers:
            self._install_signal_handlers()

        logger.info(
            "server_started",
            version=labguard.__version__,
            mode=self.plan.mode,
            host=self.plan.host,
            port=self.plan.port,
            redirect_port=self.plan.redirect_port,
            fallback_reason=self.plan.fallback_reason,
        )

        stop_waiter = asyncio.get_running_loop().create_task(self._stop_event.wait())
        listeners = [task for _, task in filter(None, (self._primary, self._redirect))]
        try:
            done, _ = await asyncio.wait(
                {stop_waiter, *listeners}, return_when=asyncio.FIRST_COMPLETED
            )
            if stop_waiter not in done:
                logger.error("listener_exited_unexpectedly")
        finally:
            stop_waiter.cancel()
            if install_signal_handlers:
                self._remove_signal_handlers()
            await self.shutdown()

    async def _close_listener(
        self, listener: Optional[Tuple[uvicorn.Server, asyncio.Task]], name: str
    ) -> None:
        if listener is None:
            return
        server, task = listener
        server.should_exit = True
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("listener_close_failed", listener=name, error=str(e))
        logger.info("listener_closed", listener=name)

    async def shutdown(self) -> None:
        """Stop everything in order. Safe to call more than once."""
        if self._shutdown_started:
            await self._shutdown_done.wait()
            return
        self._shutdown_started = True

        logger.info("shutdown_starting")
        try:
            await self.services.stop_timers()
            await self._close_listener(self._redirect, "redirect")
            await self._close_listener(self._primary, "primary")
            await self.services.drain()
            await self.services.close_store()
        finally:
            self._shutdown_done.set()
        logger.info("shutdown_completed")


def run(config_path: Optional[Path] = None, settings: Optional[APISettings] = None) -> int:
    """
    Process entry point: configure, serve, shut down.

    Returns:
        Exit code (1 on configuration errors)
    """
    try:
        settings = settings or get_settings()
        if config_path is None and settings.config_file:
            config_path = Path(settings.config_file)
        config = labguard.configure(config_path=config_path)
    except (ConfigurationError, ValueError) as e:
        logger.critical("configuration_invalid", error=str(e))
        return 1

    services = build_services(config)
    asyncio.run(TransportBootstrap(settings, services).serve())
    return 0


if __name__ == "__main__":
    sys.exit(run())
