import signal

from dotenv import load_dotenv

from datacollector import create_app

load_dotenv()


def main():
    app = create_app()
    orchestrator = app.extensions['datacollector']
    processor = orchestrator.processor

    def _stop(signum, frame):
        app.logger.info("Shutdown signal received", signal=signum)
        processor.stop()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    processor.initialize()
    try:
        processor.run_forever(poll_interval=5.0)
    finally:
        processor.shutdown()


if __name__ == '__main__':
    main()
