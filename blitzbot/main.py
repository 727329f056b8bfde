"""BlitzBot — application entry point.

Boots the FastAPI internal server, the session manager and the passive
signal logger, and provides the CLI entry point.
"""

import logging

from fastapi import FastAPI

from blitzbot.api.routers import router

app = FastAPI(title="BlitzBot Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("blitzbot")


@app.get("/health")
async def health():
    """Liveness check."""
    return {"status": "ok"}


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments and run the service."""
    import argparse
    import asyncio

    from blitzbot.config import load_config

    parser = argparse.ArgumentParser(description="BlitzBot trading controller")
    parser.add_argument(
        "--no-api",
        action="store_true",
        help="Run sessions without the API server (sessions come from boot replay)",
    )
    parser.add_argument(
        "--no-passive",
        action="store_true",
        help="Disable the passive signal logger",
    )
    parser.add_argument("--env", default=None, help="Path to a .env file")
    args = parser.parse_args()

    config = load_config(args.env)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    asyncio.run(
        _run_service(
            config,
            with_api=not args.no_api,
            with_passive=config.passive_enabled and not args.no_passive,
        )
    )


async def _run_service(config, with_api: bool = True, with_passive: bool = True) -> None:
    """Wire every component, replay active commands and run until stopped."""
    import asyncio
    import signal

    import uvicorn

    from blitzbot.api.routers import configure_routers
    from blitzbot.broker.client import BrokerClient
    from blitzbot.broker.session_tokens import SessionTokenProvider
    from blitzbot.control import ControlPlaneAdapter
    from blitzbot.engine_manager import SessionManager
    from blitzbot.passive_logger import PassiveSignalLogger
    from blitzbot.repos.bot_control_repo import BotControlRepo
    from blitzbot.repos.db import init_db
    from blitzbot.repos.passive_signal_repo import PassiveSignalRepo
    from blitzbot.repos.trade_repo import TradeRepo

    init_db(config.db_path)
    trade_repo = TradeRepo(config.db_path)
    token_provider = SessionTokenProvider(config)
    manager = SessionManager(config, token_provider=token_provider, trade_repo=trade_repo)
    control = ControlPlaneAdapter(manager, BotControlRepo(config.db_path))

    passive = None
    if with_passive:
        token = await token_provider.get_session_token(config.system_user_id)
        if token is None:
            logger.warning("Passive logger disabled: no session token for system user.")
        else:
            passive = PassiveSignalLogger(
                BrokerClient(config, session_token=token),
                PassiveSignalRepo(config.db_path),
                timeframes=config.passive_timeframes,
                interval=config.passive_interval_seconds,
            )

    configure_routers(
        trade_repo=trade_repo,
        passive_logger=passive,
        session_manager=manager,
        control=control,
    )

    replayed = await control.replay_active_commands()
    logger.info(
        "Replayed %d active command(s), %d session(s) running.",
        len(replayed), len(manager.sessions),
    )

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()

    def handle_shutdown() -> None:
        logger.info("Shutdown signal received, stopping gracefully.")
        shutdown.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handle_shutdown)
        except NotImplementedError:  # pragma: no cover (Windows)
            signal.signal(sig, lambda *_: handle_shutdown())

    tasks = []
    server = None
    if with_api:
        server = uvicorn.Server(
            uvicorn.Config(app, host="0.0.0.0", port=config.api_port, log_level="info")
        )
        server_task = asyncio.create_task(server.serve())
        # uvicorn handles SIGINT itself while serving
        server_task.add_done_callback(lambda _: shutdown.set())
        tasks.append(server_task)
        logger.info("API available at http://localhost:%d", config.api_port)
    if passive is not None:
        tasks.append(asyncio.create_task(passive.run()))

    await shutdown.wait()

    if server is not None:
        server.should_exit = True
    if passive is not None:
        passive.stop()
    await manager.shutdown()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    logger.info("BlitzBot stopped. Results: %s", results)


if __name__ == "__main__":
    _run_cli()
