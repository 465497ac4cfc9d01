from dataclasses import dataclass
from typing import Optional

from forgewatch_engine.build_executor import BuildExecutor
from forgewatch_engine.history import JsonHistoryStore
from forgewatch_engine.job_manager import JobManager
from forgewatch_engine.logger_setup import logger, setup_global_logger
from forgewatch_engine.scheduler import TriggerScheduler
from forgewatch_engine.scm_handler import SCMHandler
from forgewatch_engine.secret_manager import SecretManager, KEY_FILE_NAME
from forgewatch_engine.settings import RunnerSettings, load_settings
from forgewatch_engine.webhook import WebhookService
from forgewatch_engine.work_queue import WorkQueue


@dataclass
class Services:
    settings: RunnerSettings
    job_manager: JobManager
    history: JsonHistoryStore
    build_executor: BuildExecutor
    work_queue: WorkQueue
    scheduler: TriggerScheduler
    webhook_service: WebhookService


def build_services(settings: Optional[RunnerSettings] = None) -> Services:
    settings = settings or load_settings()
    settings.ensure_dirs()

    secret_manager = SecretManager(key=settings.encryption_key, key_file=settings.data_dir / KEY_FILE_NAME)
    job_manager = JobManager(jobs_config_dir=settings.jobs_config_dir, state_file=settings.job_state_file,
                             secret_manager=secret_manager)
    history = JsonHistoryStore(settings.history_file, limit=settings.history_limit)
    scm = SCMHandler()
    build_executor = BuildExecutor(job_manager, history, settings, scm=scm)
    work_queue = WorkQueue.from_settings(build_executor.run_queue_entry, settings)
    scheduler = TriggerScheduler(job_manager, work_queue, scm, build_executor.repo_path_for)
    webhook_service = WebhookService(job_manager, work_queue, secret=settings.webhook_secret)
    return Services(settings, job_manager, history, build_executor, work_queue, scheduler, webhook_service)


def main():
    services = build_services()
    setup_global_logger(services.settings.log_level)
    logger.info("Starting ForgeWatch...")

    services.work_queue.start()
    services.scheduler.restart()

    from web_ui.app import create_app
    flask_app = create_app(services.job_manager, services.build_executor, services.work_queue,
                           services.scheduler, services.webhook_service)
    logger.info(f"Starting API on http://{services.settings.host}:{services.settings.port}")
    try:
        # reloader off: it would start the queue and scheduler threads twice
        flask_app.run(debug=False, use_reloader=False, host=services.settings.host, port=services.settings.port)
    except KeyboardInterrupt:
        logger.info("ForgeWatch shutting down...")
    finally:
        services.scheduler.shutdown()
        services.work_queue.stop(wait=False)
        logger.info("Shutdown complete.")


if __name__ == "__main__":
    main()
