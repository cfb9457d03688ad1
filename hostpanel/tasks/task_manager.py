"""
In-process registry of long-running tasks and their output.

Producers append lines; every subscriber gets its own bounded queue.
A full subscriber queue drops the line for that subscriber only, so a
slow WebSocket never blocks the producer.
"""

import queue
import logging
import threading
from collections import deque
from datetime import datetime

logger = logging.getLogger(__name__)

MAX_LOG_LINES = 100
SUBSCRIBER_QUEUE_SIZE = 256
STATUS_PREFIX = '__STATUS__'

RUNNING = 'running'
COMPLETED = 'completed'
FAILED = 'failed'


class Task:
    def __init__(self, task_id, task_type, name, started_at):
        self.id = task_id
        self.type = task_type
        self.name = name
        self.status = RUNNING
        self.started_at = started_at
        self.ended_at = None
        self.logs = deque(maxlen=MAX_LOG_LINES)
        self.subscribers = []

    @property
    def finished(self):
        return self.status != RUNNING

    def snapshot(self):
        return {
            'id': self.id,
            'type': self.type,
            'name': self.name,
            'status': self.status,
            'started_at': self.started_at.isoformat(),
            'ended_at': self.ended_at.isoformat() if self.ended_at else None,
            'logs': list(self.logs),
        }


class TaskManager:
    def __init__(self, clock=datetime.now):
        self.clock = clock
        self._tasks = {}
        self._lock = threading.Lock()

    def create(self, task_id, task_type, name):
        task = Task(task_id, task_type, name, self.clock())
        with self._lock:
            self._tasks[task_id] = task
        logger.info(f"Task started: {task_id} ({name})")
        return task

    def _publish(self, task, line):
        for q in task.subscribers:
            try:
                q.put_nowait(line)
            except queue.Full:
                pass

    def add_log(self, task_id, line):
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                logger.warning(f"Log line for unknown task {task_id} dropped")
                return
            entry = f"[{self.clock().strftime('%H:%M:%S')}] {line}"
            task.logs.append(entry)
            self._publish(task, entry)

    def complete(self, task_id, success):
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return
            task.status = COMPLETED if success else FAILED
            task.ended_at = self.clock()
            self._publish(task, f"{STATUS_PREFIX}{task.status}")
        logger.info(f"Task {task_id} {task.status}")

    def subscribe(self, task_id, maxsize=SUBSCRIBER_QUEUE_SIZE):
        """
        Register a subscriber queue.
        Returns (lines so far, status, queue) taken under one lock so no line is
        both replayed and delivered live, or None when the task is unknown.
        """
        q = queue.Queue(maxsize=maxsize)
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            task.subscribers.append(q)
            return list(task.logs), task.status, q

    def unsubscribe(self, task_id, q):
        with self._lock:
            task = self._tasks.get(task_id)
            if task is not None and q in task.subscribers:
                task.subscribers.remove(q)

    def get(self, task_id):
        with self._lock:
            task = self._tasks.get(task_id)
            return task.snapshot() if task else None

    def list(self):
        with self._lock:
            return [task.snapshot() for task in self._tasks.values()]

    def status(self, task_id):
        with self._lock:
            task = self._tasks.get(task_id)
            return task.status if task else None

    def events(self, task_id, should_stop=None, poll=1.0):
        """
        Frames for one subscriber: replayed lines, then live lines, then one status frame.
        Yields nothing when the task is unknown.
        """
        subscription = self.subscribe(task_id)
        if subscription is None:
            return
        lines, status, q = subscription
        try:
            for line in lines:
                yield {'type': 'log', 'data': line}
            if status != RUNNING:
                yield {'type': 'status', 'status': status}
                return

            while not (should_stop and should_stop()):
                try:
                    line = q.get(timeout=poll)
                except queue.Empty:
                    # The sentinel can be lost to a full queue; the state is authoritative.
                    current = self.status(task_id)
                    if current != RUNNING:
                        yield {'type': 'status', 'status': current}
                        return
                    continue
                if line.startswith(STATUS_PREFIX):
                    yield {'type': 'status', 'status': line[len(STATUS_PREFIX):]}
                    return
                yield {'type': 'log', 'data': line}
        finally:
            self.unsubscribe(task_id, q)

    def run_steps(self, task_id, runner, steps):
        """
        Execute (argv, required) pairs, streaming output into the task log.
        A failing required step fails the task; optional steps only log.
        """
        success = True
        try:
            for args, required in steps:
                self.add_log(task_id, f"$ {' '.join(args)}")
                code = runner.stream(args, lambda line: self.add_log(task_id, line))
                if code != 0:
                    self.add_log(task_id, f"exit status {code}")
                    if required:
                        success = False
                        break
        except Exception as e:
            logger.error(f"Task {task_id} crashed: {e}", exc_info=True)
            self.add_log(task_id, f"ERROR: {e}")
            success = False
        self.complete(task_id, success)
        return success
