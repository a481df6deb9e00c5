import os
import threading
from pathlib import Path

from reincarnation_engine.config_manager import ConfigManager
from reincarnation_engine.decision import DecisionEngine
from reincarnation_engine.host import HttpRestartAction, JobRegistry, QueueingRestartAction
from reincarnation_engine.periodic import PeriodicSweep, DEFAULT_RECURRENCE_PERIOD
from reincarnation_engine.logger_setup import logger

# --- Global Instances (shared between the sweep thread and the web API) ---
PROJECT_ROOT = Path(__file__).resolve().parent
CONFIG_PATH = Path(os.environ.get("REINCARNATION_CONFIG", PROJECT_ROOT / "reincarnation.yaml"))
HOST_URL = os.environ.get("REINCARNATION_HOST_URL")  # e.g. http://127.0.0.1:5000
RECURRENCE_PERIOD = int(os.environ.get("REINCARNATION_RECURRENCE_PERIOD", DEFAULT_RECURRENCE_PERIOD))

config_manager = ConfigManager(config_path=CONFIG_PATH)
restart_action = HttpRestartAction(HOST_URL) if HOST_URL else QueueingRestartAction()
job_registry = JobRegistry(restart_action=restart_action, local_config_source=config_manager.get_local)
decision_engine = DecisionEngine(job_registry, config_provider=config_manager.get_global)
periodic_sweep = PeriodicSweep(job_registry, config_provider=config_manager.get_global,
                               recurrence_period=RECURRENCE_PERIOD)


if __name__ == "__main__":
    logger.info("Starting Reincarnation Engine...")
    if not HOST_URL:
        logger.warning("REINCARNATION_HOST_URL not set; restart requests are queued until the host polls GET /api/restarts.")

    stop_event = threading.Event()
    periodic_sweep.start(stop_event)
    logger.info("Periodic reincarnation thread started.")

    from web_ui.app import create_app
    flask_app = create_app(config_manager, job_registry, decision_engine)
    logger.info("Starting Web API on http://127.0.0.1:5050")
    try:
        flask_app.run(debug=False, use_reloader=False, host="0.0.0.0", port=5050) # Reloader would start a second sweep thread
    finally:
        stop_event.set()
        if isinstance(restart_action, HttpRestartAction):
            restart_action.close()
        logger.info("Reincarnation Engine stopped.")
