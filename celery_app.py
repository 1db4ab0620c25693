import platform
from celery import Celery
from config import AppSettings


settings = AppSettings()


def _build_broker_url() -> str:
    if settings.redis_url:
        return settings.redis_url
    return f"redis://{settings.redis_host}:{settings.redis_port}/{settings.redis_db}"


celery_app = Celery(
    'layout_worker',
    broker=_build_broker_url(),
    backend=_build_broker_url(),
    include=['tasks'],
)

celery_config = {
    'task_ignore_result': False,
    'task_acks_late': True,
    'worker_prefetch_multiplier': 1,
    'result_expires': settings.job_ttl_seconds,
}

# Platform-specific configuration
if settings.celery_worker_pool:
    celery_config['worker_pool'] = settings.celery_worker_pool
elif platform.system() == 'Windows':
    celery_config.update({
        'worker_pool': 'solo',  # prefork is unsupported on Windows
        'worker_concurrency': 1,
    })
else:
    celery_config.update({
        'worker_pool': 'prefork',
        'worker_concurrency': 4,
    })

if settings.celery_worker_concurrency:
    celery_config['worker_concurrency'] = settings.celery_worker_concurrency

celery_app.conf.update(celery_config)
