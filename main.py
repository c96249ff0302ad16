"""Run the POS server, optionally with the payment retry worker beside it.

Env vars:
  PAYMENT_RETRY_AUTO_START   '1' to spawn sync_worker.py with the server
  HOST, PORT, FLASK_DEBUG    passed to app.run
"""
import os
import subprocess
import sys
from typing import Optional

import pos_server
from pos_server import app

WORKER_SCRIPT = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'sync_worker.py')
WORKER_STOP_TIMEOUT = 10


def start_payment_retry_worker() -> Optional[subprocess.Popen]:
    """Spawn the retry worker against the server's database, once per process tree."""
    if os.getenv('PAYMENT_RETRY_AUTO_START', '0') != '1':
        return None
    # the debug reloader imports this module twice
    if os.environ.get('WERKZEUG_RUN_MAIN') == 'true':
        return None
    if not os.path.exists(WORKER_SCRIPT):
        app.logger.warning("Payment retry worker not found at %s", WORKER_SCRIPT)
        return None
    env = os.environ.copy()
    env['POS_DB_PATH'] = pos_server.POS_DB_PATH
    env.setdefault('SYNC_INTERVAL', '30')
    proc = subprocess.Popen([sys.executable, WORKER_SCRIPT], env=env)
    app.logger.info("Payment retry worker started (pid=%s, db=%s)", proc.pid, env['POS_DB_PATH'])
    return proc


def stop_payment_retry_worker(proc: Optional[subprocess.Popen]) -> None:
    if proc is None or proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=WORKER_STOP_TIMEOUT)
    except subprocess.TimeoutExpired:
        app.logger.warning("Payment retry worker %s did not stop, killing it", proc.pid)
        proc.kill()


if __name__ == '__main__':
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    worker_proc = start_payment_retry_worker()
    try:
        app.run(host=host, port=port, debug=debug)
    finally:
        stop_payment_retry_worker(worker_proc)
