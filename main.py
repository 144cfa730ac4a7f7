from __future__ import annotations

from threading import Thread

import uvicorn

from proxysync.api import create_app
from proxysync.directory import DirectoryClient
from proxysync.eventlog import configure_logging, log_event
from proxysync.proxy import ProxyController
from proxysync.render import ConfigRenderer
from proxysync.runtime import ControlLoop
from proxysync.settings import ConfigurationMissing, Settings
from proxysync.stream import ConnectionLost, StreamConnection
from proxysync.watcher import ConfigFileWatcher


def build_loop(settings: Settings, directory: DirectoryClient) -> ControlLoop:
    return ControlLoop(
        directory=directory,
        renderer=ConfigRenderer(settings.template_path),
        proxy=ProxyController(
            command=settings.reload_argv,
            container=settings.proxy_container,
            timeout_s=settings.request_timeout_s,
        ),
        output_path=settings.output_path,
        settle_delay=settings.settle_delay_s,
        reload_delay=settings.reload_delay_s,
    )


def start_api(loop: ControlLoop, settings: Settings) -> uvicorn.Server:
    app = create_app(loop, settings)
    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.uvicorn_log_level,
        access_log=False,
    )
    server = uvicorn.Server(config)
    Thread(target=server.run, name="proxysync-api", daemon=True).start()
    log_event("INFO", f"Status API listening on http://{settings.api_host}:{settings.api_port}")
    return server


def main(settings: Settings | None = None) -> int:
    settings = settings or Settings()
    configure_logging(settings.logging_level)
    try:
        settings.validate()
    except ConfigurationMissing as e:
        log_event("ERROR", str(e))
        return 1

    directory = DirectoryClient(settings.api_url, settings.auth or "", timeout_s=settings.request_timeout_s)
    loop = build_loop(settings, directory)
    watcher = ConfigFileWatcher(settings.output_path, loop.post_file_changed)
    # Queued behind the bootstrap, so watching starts after the first write.
    stream = StreamConnection(settings.stream_endpoint, loop, on_open=lambda: loop.post_watch_start(watcher.start))

    server = None
    try:
        loop.start()
        if settings.enable_api:
            server = start_api(loop, settings)
        stream.run()
    except ConnectionLost as e:
        log_event("ERROR", f"{e}; exiting for the supervisor to restart")
        return 1
    finally:
        if server is not None:
            server.should_exit = True
        loop.stop()
        watcher.stop()
        directory.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
