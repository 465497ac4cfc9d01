from pathlib import Path
from typing import Optional

from flask import Flask, request, jsonify

from forgewatch_engine.exceptions import QueueError, WebhookAuthError
from forgewatch_engine.logger_setup import logger as global_logger


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def create_app(job_manager, build_executor, work_queue, scheduler, webhook_service):
    """JSON API over the queue, scheduler, build history and webhook ingress."""
    app = Flask(__name__)

    # --- jobs ----------------------------------------------------------

    @app.route('/api/jobs')
    def list_jobs():
        return jsonify([job.to_public_dict() for job in job_manager.list_jobs()])

    @app.route('/api/jobs/<job_id>')
    def job_detail(job_id):
        job = job_manager.get_job(job_id)
        if not job:
            return jsonify({"error": "Job not found"}), 404
        data = job.to_public_dict()
        data["builds"] = [r.to_dict() for r in build_executor.history.list(limit=25, job_id=job.id)]
        return jsonify(data)

    # --- queue ---------------------------------------------------------

    @app.route('/api/queue', methods=['GET'])
    def queue_status():
        return jsonify(work_queue.get_status())

    @app.route('/api/queue/stats', methods=['GET'])
    def queue_stats():
        return jsonify(work_queue.get_stats())

    @app.route('/api/queue', methods=['POST'])
    def enqueue():
        data = _json_body()
        job_id = data.get('job_id')
        if not job_id:
            return jsonify({"error": "Missing 'job_id' in payload"}), 400
        job = job_manager.get_job(job_id)
        if not job:
            return jsonify({"error": f"Job '{job_id}' not found"}), 404
        metadata = dict(data.get('metadata') or {})
        metadata.setdefault('source', 'api')
        try:
            entry_id = work_queue.add_job(job.id, job.name, data.get('priority') or 'medium',
                                          max_retries=data.get('max_retries'), metadata=metadata)
        except QueueError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({"entry_id": entry_id}), 201

    @app.route('/api/queue/<entry_id>', methods=['DELETE'])
    def cancel_entry(entry_id):
        if work_queue.cancel(entry_id):
            return jsonify({"message": f"Entry {entry_id} cancelled"})
        return jsonify({"error": f"Entry {entry_id} not found"}), 404

    @app.route('/api/queue/config', methods=['POST'])
    def update_queue_config():
        data = _json_body()
        try:
            stats = work_queue.update_config(
                max_concurrent_jobs=data.get('max_concurrent_jobs'),
                resource_threshold=data.get('resource_threshold'),
            )
        except (QueueError, TypeError, ValueError) as e:
            return jsonify({"error": str(e)}), 400
        return jsonify(stats)

    @app.route('/api/queue/pause', methods=['POST'])
    def pause_queue():
        work_queue.pause()
        return jsonify(work_queue.get_stats())

    @app.route('/api/queue/resume', methods=['POST'])
    def resume_queue():
        work_queue.resume()
        return jsonify(work_queue.get_stats())

    # --- scheduler -----------------------------------------------------

    @app.route('/api/scheduler', methods=['GET'])
    def scheduler_status():
        return jsonify(scheduler.status())

    @app.route('/api/scheduler/restart', methods=['POST'])
    def scheduler_restart():
        return jsonify(scheduler.restart(reload_jobs=True))

    @app.route('/api/scheduler/stop', methods=['POST'])
    def scheduler_stop():
        scheduler.stop()
        return jsonify(scheduler.status())

    # --- builds --------------------------------------------------------

    @app.route('/api/builds')
    def list_builds():
        limit = request.args.get('limit', 50, type=int)
        job_id = request.args.get('job_id')
        return jsonify([r.to_dict() for r in build_executor.history.list(limit=limit, job_id=job_id)])

    @app.route('/api/builds/<build_id>/log')
    def build_log(build_id):
        record = build_executor.history.get(build_id)
        if not record:
            return jsonify({"error": "Build not found"}), 404
        if 'offset' not in request.args:
            content = build_executor.get_build_log_content(build_id, request.args.get('max_lines', type=int))
            return jsonify({"status": record.status.value, "log": content or ""})

        # incremental tail for live views
        start_offset = request.args.get('offset', 0, type=int)
        log_file: Optional[Path] = Path(record.log_file) if record.log_file else None
        log_delta = ""
        new_offset = start_offset
        if log_file and log_file.exists():
            try:
                current_file_size = log_file.stat().st_size
                if current_file_size > start_offset:
                    with open(log_file, "r", encoding="utf-8", errors="replace") as f:
                        f.seek(start_offset)
                        log_delta = f.read()
                new_offset = current_file_size
            except OSError as e:
                global_logger.error(f"Error reading log delta for build {build_id} from {log_file}: {e}", exc_info=True)
                log_delta = f"[Error reading log on server: {e}]\n"
        else:
            log_delta = "[Log file not found on server yet]\n"
        return jsonify({"status": record.status.value, "new_offset": new_offset, "log_delta": log_delta})

    # --- webhooks ------------------------------------------------------

    @app.route('/api/webhook/github', methods=['POST'])
    def github_webhook():
        event = request.headers.get('X-GitHub-Event', 'push')
        if event == 'ping':
            return jsonify({"message": "pong"})
        if event != 'push':
            return jsonify({"message": f"Event '{event}' ignored"}), 202
        return _handle_webhook(lambda: webhook_service.handle_github_push(
            request.get_data(), request.headers.get('X-Hub-Signature-256')))

    @app.route('/api/webhook/gitlab', methods=['POST'])
    def gitlab_webhook():
        event = request.headers.get('X-Gitlab-Event', 'Push Hook')
        if event != 'Push Hook':
            return jsonify({"message": f"Event '{event}' ignored"}), 202
        return _handle_webhook(lambda: webhook_service.handle_gitlab_push(
            request.get_data(), request.headers.get('X-Gitlab-Token')))

    def _handle_webhook(handler):
        try:
            result = handler()
        except WebhookAuthError as e:
            global_logger.warning(f"[WEBHOOK] Rejected request from {request.remote_addr}: {e}")
            return jsonify({"error": str(e)}), 401
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        status = 200 if result.get("success") else 404
        return jsonify(result), status

    @app.route('/api/webhook/stats')
    def webhook_stats():
        return jsonify(webhook_service.get_stats())

    return app
