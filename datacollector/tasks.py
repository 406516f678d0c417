from datacollector import create_app


def run_job(payload):
    """RQ entry point: runs one queued job inside a fresh application."""
    app = create_app()
    with app.app_context():
        log = app.logger.bind(job_id=payload.get('id'), job_type=payload.get('type'))
        log.info("Starting job task")
        processor = app.extensions['datacollector'].processor
        return processor.execute_job(payload)
