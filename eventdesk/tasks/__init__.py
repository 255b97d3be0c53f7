from celery import Celery
from celery.signals import worker_process_init

from eventdesk.config import c, _config as config_dict
from eventdesk.models import initialize_db


__all__ = ['celery']


celery = Celery('tasks')
celery.conf.beat_schedule = {}
celery.conf.update(config_dict['celery'])

broker_url = c.BROKER_URL
celery.conf.update(broker_url=broker_url)
celery.conf.update(result_backend=broker_url.replace("amqps://", "rpc://").replace("amqp://", "rpc://"))
celery.conf.update(task_ignore_result=True)


def celery_schedule(schedule, *args, **kwargs):
    def _decorator(fn):
        task = celery.task(fn)
        celery.conf.beat_schedule[task.name] = {
            'task': task.name,
            'schedule': schedule,
            'args': args,
            'kwargs': kwargs,
        }
        return task
    return _decorator


celery.schedule = celery_schedule


@worker_process_init.connect
def init_worker_process(*args, **kwargs):
    initialize_db()


from eventdesk.tasks import email  # noqa: F401, E402
from eventdesk.tasks import registration  # noqa: F401, E402
from eventdesk.tasks import sms  # noqa: F401, E402
