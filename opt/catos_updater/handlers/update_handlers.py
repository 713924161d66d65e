"""
Update API handlers.

This module provides HTTP request handlers the graphical shell uses to drive
the update client: version lookup, update checks, download-and-install,
status polling, acknowledgement and a WebSocket progress stream.
"""

import asyncio
import logging
from datetime import datetime
from aiohttp import web, WSMsgType

from ..config_loader import load_update_state, save_update_state
from ..updater.errors import (
    ManifestFormatError,
    NetworkError,
    NoUpdatePendingError,
    SessionBusyError,
    UpdaterError,
    error_to_dict,
)
from ..updater.orchestrator import UpdateOrchestrator

logger = logging.getLogger(__name__)

ORCHESTRATOR_KEY = web.AppKey('orchestrator', UpdateOrchestrator)
SUBSCRIPTIONS_KEY = web.AppKey('event_subscriptions', set)


def _error_status(error):
    if isinstance(error, (SessionBusyError, NoUpdatePendingError)):
        return 409
    if isinstance(error, ManifestFormatError):
        return 422
    if isinstance(error, NetworkError):
        return 502
    return 500


def error_response(error):
    """JSON error body for a pipeline exception."""
    return web.json_response({'status': 'error', **error_to_dict(error)}, status=_error_status(error))


def _record(**fields):
    state = load_update_state()
    state.update(fields)
    if not save_update_state(state):
        logger.warning("Could not persist update record")


async def get_current_version(request):
    """Returns the installed version."""
    orchestrator = request.app[ORCHESTRATOR_KEY]
    return web.json_response({
        'status': 'success',
        'current_version': orchestrator.get_current_version()
    })


async def check_updates(request):
    """Checks for available updates."""
    orchestrator = request.app[ORCHESTRATOR_KEY]
    try:
        result = await orchestrator.check_for_updates()
    except (UpdaterError, OSError) as e:
        logger.error(f"Error checking for updates: {e}")
        if not isinstance(e, SessionBusyError):
            _record(last_check=datetime.now().isoformat(), last_result=error_to_dict(e))
        return error_response(e)
    except Exception as e:
        logger.exception(f"Unexpected error checking for updates: {e}")
        _record(last_check=datetime.now().isoformat(), last_result=error_to_dict(e))
        return error_response(e)

    _record(last_check=datetime.now().isoformat())
    return web.json_response({
        'status': 'success',
        'update_info': result.to_dict()
    })


async def trigger_install(request):
    """Starts download-and-install of the available update in the background."""
    orchestrator = request.app[ORCHESTRATOR_KEY]
    try:
        task = orchestrator.start_download_and_install()
    except (SessionBusyError, NoUpdatePendingError) as e:
        logger.warning(f"Rejected install request: {e}")
        return error_response(e)

    session = orchestrator.session

    def record_outcome(finished):
        if finished.cancelled():
            return
        error = finished.exception()
        if error is None:
            _record(last_update=datetime.now().isoformat(), last_result={
                'code': 'completed',
                'message': f"Installed {session.check_result.latest_version}"
            })
        else:
            _record(last_result=error_to_dict(error))

    task.add_done_callback(record_outcome)

    return web.json_response({
        'status': 'success',
        'message': 'Update started',
        'session': session.to_dict()
    }, status=202)


async def get_update_status(request):
    """Returns the current state and session snapshot."""
    orchestrator = request.app[ORCHESTRATOR_KEY]
    return web.json_response({'status': 'success', **orchestrator.get_status()})


async def dismiss_update(request):
    """Acknowledges a finished session so a new cycle may start."""
    orchestrator = request.app[ORCHESTRATOR_KEY]
    try:
        orchestrator.dismiss()
    except SessionBusyError as e:
        return error_response(e)

    return web.json_response({'status': 'success', 'state': orchestrator.state.value})


async def get_update_history(request):
    """Returns the persisted record of the last check and update."""
    return web.json_response({'status': 'success', 'history': load_update_state()})


async def update_events(request):
    """Streams update events to the shell over a WebSocket."""
    orchestrator = request.app[ORCHESTRATOR_KEY]

    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)
    logger.debug("Update event stream opened")

    subscription = orchestrator.events.subscribe()
    request.app[SUBSCRIPTIONS_KEY].add(subscription)

    # Let the client render the current state immediately
    await ws.send_json({'kind': 'status', **orchestrator.get_status()})

    async def drain_client():
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                logger.debug(f"Update event stream error: {ws.exception()}")
                break
        subscription.close()

    drain_task = asyncio.create_task(drain_client())
    try:
        async for event in subscription:
            if ws.closed:
                break
            await ws.send_json(event.to_dict())
    except ConnectionResetError:
        logger.debug("Update event stream client went away")
    finally:
        subscription.close()
        request.app[SUBSCRIPTIONS_KEY].discard(subscription)
        drain_task.cancel()
        await ws.close()
        logger.debug("Update event stream closed")

    return ws
