"""
CatOS Update Client - Main Entry Point

Serves the local API the graphical update shell talks to. The shell asks
for the current version, triggers checks and installs, and follows progress
over a WebSocket.
"""

import logging
from aiohttp import web

from catos_updater.config_loader import get_system_config, get_updater_config
from catos_updater.handlers.update_handlers import (
    ORCHESTRATOR_KEY, SUBSCRIPTIONS_KEY,
    get_current_version, check_updates, trigger_install,
    get_update_status, dismiss_update, get_update_history, update_events
)
from catos_updater.updater.orchestrator import create_orchestrator

logger = logging.getLogger(__name__)


@web.middleware
async def cors_middleware(request, handler):
    """Allows the shell's web view to call the local API."""
    # Handle OPTIONS preflight requests
    if request.method == 'OPTIONS':
        response = web.Response()
    else:
        response = await handler(request)

    if not response.prepared:
        response.headers['Access-Control-Allow-Origin'] = '*'
        response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
        response.headers['Access-Control-Allow-Headers'] = 'Content-Type'
        response.headers['Access-Control-Max-Age'] = '86400'  # 24 hours
    return response


async def close_event_streams(app):
    for subscription in list(app[SUBSCRIPTIONS_KEY]):
        subscription.close()


def init_app(orchestrator=None):
    """Initializes the Aiohttp application with routes."""
    if orchestrator is None:
        orchestrator = create_orchestrator(get_updater_config())

    app = web.Application(middlewares=[cors_middleware])
    app[ORCHESTRATOR_KEY] = orchestrator
    app[SUBSCRIPTIONS_KEY] = set()
    app.on_shutdown.append(close_event_streams)

    # ---< API Routes >---
    app.router.add_get('/api/update/version', get_current_version)
    app.router.add_get('/api/update/check', check_updates)
    app.router.add_post('/api/update/install', trigger_install)
    app.router.add_get('/api/update/status', get_update_status)
    app.router.add_post('/api/update/dismiss', dismiss_update)
    app.router.add_get('/api/update/history', get_update_history)
    app.router.add_get('/api/update/events', update_events)

    return app


def main():
    system_config = get_system_config()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, str(system_config.get('log_level', 'INFO')).upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    app = init_app()
    logger.info(f"CatOS update API listening on {system_config['host']}:{system_config['port']}")
    web.run_app(app, host=system_config['host'], port=system_config['port'])


if __name__ == '__main__':
    main()
