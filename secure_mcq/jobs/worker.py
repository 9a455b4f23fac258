import logging
from rq import Worker
from secure_mcq.core.config import settings
from secure_mcq.jobs.queue import redis


def main() -> None:
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    # e-mail hand-offs and the expired-session sweep share one queue
    Worker([settings.RQ_QUEUE], connection=redis).work(with_scheduler=True)


if __name__ == "__main__":
    main()
