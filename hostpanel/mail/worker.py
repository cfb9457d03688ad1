"""
Outbound mail queue worker.
Runs as its own process under the init system and drains mail_queue on a fixed tick.
"""

import signal
import logging
import threading

from ..config import load_config
from ..db import Database
from ..runner import CommandRunner
from ..schema import ensure_schema
from .queue import MailQueue

logger = logging.getLogger(__name__)


class MailWorker:
    def __init__(self, queue, interval=60, batch=50):
        self.queue = queue
        self.interval = interval
        self.batch = batch
        self.stop_event = threading.Event()

    def stop(self, *_args):
        logger.info("Shutdown requested, finishing current item")
        self.stop_event.set()

    def tick(self):
        try:
            return self.queue.process_queue(self.batch, should_stop=self.stop_event.is_set)
        except Exception as e:
            # A broken tick must not kill the worker; the next tick retries.
            logger.error(f"Mail queue run failed: {e}", exc_info=True)
            return {}

    def run(self):
        logger.info(f"Mail queue worker started (interval {self.interval}s, batch {self.batch})")
        self.tick()
        while not self.stop_event.wait(self.interval):
            self.tick()
        logger.info("Mail queue worker stopped")


def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    config = load_config()
    db = Database(config.database_path)
    ensure_schema(db)
    runner = CommandRunner(simulate=config.simulate)

    worker = MailWorker(
        MailQueue(db, runner, sendmail_path=config.sendmail_path),
        interval=config.mail_queue_interval,
        batch=config.mail_queue_batch,
    )
    signal.signal(signal.SIGINT, worker.stop)
    signal.signal(signal.SIGTERM, worker.stop)
    worker.run()


if __name__ == '__main__':
    main()
