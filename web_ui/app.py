from flask import Flask, request, abort, jsonify

from reincarnation_engine.config import check_cron_time
from reincarnation_engine.errors import ConfigurationError
from reincarnation_engine.models import BuildOutcome, Cause
from reincarnation_engine.logger_setup import logger as global_logger

# Global instances (will be set by create_app)
config_manager_instance = None
job_registry_instance = None
decision_engine_instance = None


def create_app(config_manager, job_registry, decision_engine):
    global config_manager_instance, job_registry_instance, decision_engine_instance
    config_manager_instance = config_manager
    job_registry_instance = job_registry
    decision_engine_instance = decision_engine

    app = Flask(__name__)

    @app.route('/api/config', methods=['GET'])
    def get_config():
        return jsonify(config_manager_instance.get_global().to_dict())

    @app.route('/api/config', methods=['POST'])
    def update_config():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "Invalid request, JSON object expected"}), 400
        try:
            new_config = config_manager_instance.update_global(data)
        except ConfigurationError as ce:
            global_logger.warning(f"Rejected global configuration update: {ce}")
            return jsonify({"error": "Invalid configuration", "problems": ce.problems}), 400
        if request.args.get('persist', 'false').lower() == 'true':
            config_manager_instance.save()
        return jsonify(new_config.to_dict()), 200

    @app.route('/api/config/check-cron')
    def check_cron():
        valid, message = check_cron_time(request.args.get('value', ''))
        return jsonify({"valid": valid, "message": message})

    @app.route('/api/jobs')
    def list_jobs():
        return jsonify([job.to_dict() for job in job_registry_instance.list_jobs()])

    @app.route('/api/restarts')
    def take_restarts():
        # Each request is handed out once; the host reports the resulting build back with its cause.
        return jsonify({"restarts": [r.to_dict() for r in job_registry_instance.drain_restarts()]})

    @app.route('/api/job/<job_name>/config', methods=['GET'])
    def get_job_config(job_name):
        local = config_manager_instance.get_local(job_name)
        if local is None:
            abort(404, description="Job is not configured locally")
        return jsonify(local.to_dict())

    @app.route('/api/job/<job_name>/config', methods=['PUT'])
    def update_job_config(job_name):
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "Invalid request, JSON object expected"}), 400
        try:
            local = config_manager_instance.update_local(job_name, data)
        except ConfigurationError as ce:
            return jsonify({"error": "Invalid configuration", "problems": ce.problems}), 400
        return jsonify(local.to_dict()), 200

    @app.route('/api/job/<job_name>/builds', methods=['POST'])
    def build_completed(job_name):
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "Invalid request, JSON payload expected"}), 400

        try:
            outcome = BuildOutcome(str(data.get('outcome', '')).upper())
        except ValueError:
            return jsonify({"error": f"Unknown build outcome {data.get('outcome')!r}"}), 400

        console_lines = data.get('console_lines') or []
        if not isinstance(console_lines, list):
            return jsonify({"error": "'console_lines' must be a list of strings"}), 400

        cause = None
        if data.get('cause'):
            try:
                cause = Cause.from_dict(data['cause'])
            except (KeyError, TypeError, ValueError) as e:
                return jsonify({"error": f"Invalid cause: {e}"}), 400

        build = job_registry_instance.record_build(
            job_name,
            outcome,
            console_lines=[str(line) for line in console_lines],
            cause=cause,
            config_digest=data.get('config_digest'),
        )

        global_logger.debug(f"Received completion of build #{build.number} for job {job_name}")
        decisions = decision_engine_instance.on_build_completed(build)
        return jsonify({
            "build_number": build.number,
            "restarts": [d.to_dict() for d in decisions],
        }), 200

    return app
