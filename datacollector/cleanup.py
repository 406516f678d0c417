import os

from dotenv import load_dotenv


def cleanup_jobs(app, older_than_days=None, trim_queue=True):
    """
    Delete finished jobs created more than older_than_days ago (default
    JOB_RETENTION_DAYS) and, unless disabled, trim the queue history.
    Returns (deleted_jobs, trimmed_queue_entries).
    """
    result = app.extensions['datacollector'].cleanup(older_than_days, trim_queue=trim_queue)
    return result['deleted_jobs'], result['trimmed_queue_entries']


if __name__ == '__main__':
    import argparse
    from datacollector import create_app

    load_dotenv()
    parser = argparse.ArgumentParser(description='Delete old finished jobs and trim queue history.')
    parser.add_argument('--days', '-d', type=int, default=None,
                        help='Delete finished jobs older than this many days (default: JOB_RETENTION_DAYS)')
    parser.add_argument('--skip-queue', action='store_true', help='Do not trim finished/failed queue registries')
    parser.add_argument('--database-url', default=os.environ.get('DATABASE_URL'),
                        help='Database URL (default: DATABASE_URL)')
    args = parser.parse_args()

    overrides = {'SQLALCHEMY_DATABASE_URI': args.database_url} if args.database_url else None
    app = create_app(overrides)
    deleted, trimmed = cleanup_jobs(app, older_than_days=args.days, trim_queue=not args.skip_queue)

    print(f"Deleted {deleted} jobs, trimmed {trimmed} queue entries")
