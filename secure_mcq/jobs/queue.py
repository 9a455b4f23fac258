import logging
from redis import Redis, RedisError
from rq import Queue
from secure_mcq.core.config import settings

logger = logging.getLogger(__name__)

redis = Redis.from_url(settings.REDIS_URL, socket_timeout=settings.REDIS_SOCKET_TIMEOUT, socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT)
queue = Queue(settings.RQ_QUEUE, connection=redis)


def enqueue(func, *args, **kwargs):
    try:
        return queue.enqueue(func, *args, **kwargs)
    except RedisError as e:
        logger.warning("could not enqueue %s: %s", getattr(func, "__name__", func), e)
        return None
