"""
WebSocket endpoints: the interactive shell and live task logs.
Both authenticate with ?token= because browsers cannot set headers on upgrade.
"""

import json
import logging
import threading

from flask import current_app, request
from flask_sock import Sock
from simple_websocket import ConnectionClosed

from ..auth import verify_jwt_token
from ..errors import PanelError
from .common import panel

logger = logging.getLogger(__name__)


def _ws_user():
    payload = verify_jwt_token(request.args.get('token', ''), current_app.config['JWT_SECRET'])
    if not payload:
        return None
    active = panel().db.fetch_value("SELECT active FROM users WHERE id=?", (payload['user_id'],))
    if not active:
        return None
    return payload


def _drain(ws, closed):
    """Discard client frames; they only tell us the socket is alive."""
    try:
        while True:
            ws.receive()
    except ConnectionClosed:
        pass
    finally:
        closed.set()


def stream_task(ws, task_id):
    user = _ws_user()
    if not user or user.get('role') != 'admin':
        ws.send(json.dumps({'type': 'error', 'error': 'Access denied'}))
        return
    tasks = panel().tasks
    if tasks.get(task_id) is None:
        ws.send(json.dumps({'type': 'error', 'error': 'Task not found'}))
        return

    closed = threading.Event()
    threading.Thread(target=_drain, args=(ws, closed), daemon=True).start()
    try:
        for frame in tasks.events(task_id, should_stop=closed.is_set):
            ws.send(json.dumps(frame))
    except ConnectionClosed:
        logger.info(f"Task log subscriber for {task_id} went away")


def _pump_output(session, ws, done):
    try:
        while True:
            data = session.read(timeout=1.0)
            if data is None:
                break
            if data:
                ws.send(data)
    except ConnectionClosed:
        pass
    finally:
        done.set()


def run_shell(ws):
    user = _ws_user()
    if not user:
        ws.send('\r\nUnauthorized\r\n')
        return
    shells = panel().shells
    try:
        session = shells.open(user)
    except PanelError as e:
        ws.send(f"\r\n{e.message}\r\n")
        return

    done = threading.Event()
    threading.Thread(target=_pump_output, args=(session, ws, done), daemon=True).start()
    try:
        while not done.is_set():
            message = ws.receive(timeout=1.0)
            if message is None:
                continue
            session.handle_input(message)
    except (ConnectionClosed, OSError):
        pass
    finally:
        shells.close(session)


def register_websockets(app):
    sock = Sock(app)

    @sock.route('/ws/shell')
    def shell(ws):
        run_shell(ws)

    @sock.route('/ws/tasks/<task_id>')
    def task_log(ws, task_id):
        stream_task(ws, task_id)

    return sock
