#  Generation Broker - Dependency Injection Container
#
#  DeclarativeContainer wiring all services and their dependencies.
#
#  Depends on: cache.py, db/connection.py, executors/registry.py, storage.py,
#              services/*
#  Used by:    app.py, routes/*, middleware/auth.py

import httpx
from dependency_injector import containers, providers

from broker.cache import Cache, create_redis
from broker.config import HTTP_REQUEST_TIMEOUT, REDIS_URL
from broker.db.connection import Database
from broker.executors.registry import ExecutorRegistry
from broker.services.accounting import AccountingEngine
from broker.services.accounts import AccountStore
from broker.services.ai_models import AIModelCatalog
from broker.services.auth import AuthService
from broker.services.ledger import LedgerService
from broker.services.polling import PollingSupervisor
from broker.services.submission import SubmissionService
from broker.services.task_queue import RedisTaskQueue
from broker.services.tasks import TaskStore
from broker.services.worker_pool import WorkerPool
from broker.storage import build_object_store


class Container(containers.DeclarativeContainer):
    """DI container for the Generation Broker.

    All services are Singletons, one instance per application lifecycle.
    Routes access them via @inject + Depends(Provide[Container.xxx]).
    Tests override them via container.xxx.override(providers.Object(mock)).
    """

    wiring_config = containers.WiringConfiguration(
        modules=[
            "broker.routes.admin",
            "broker.routes.auth",
            "broker.routes.models",
            "broker.routes.services",
            "broker.routes.tasks",
            "broker.middleware.auth",
        ]
    )

    # --- Core ---
    db = providers.Singleton(Database)
    redis = providers.Singleton(create_redis, url=REDIS_URL)
    cache = providers.Singleton(Cache, redis=redis)
    http_client = providers.Singleton(httpx.AsyncClient, timeout=HTTP_REQUEST_TIMEOUT)
    object_store = providers.Singleton(build_object_store)
    queue = providers.Singleton(RedisTaskQueue, redis=redis)

    # --- Stores ---
    ledger = providers.Singleton(LedgerService, db=db)
    accounts = providers.Singleton(AccountStore, db=db, cache=cache)
    ai_models = providers.Singleton(AIModelCatalog, db=db, cache=cache)
    tasks = providers.Singleton(TaskStore, db=db)

    # --- Services ---
    accounting = providers.Singleton(AccountingEngine, db=db, cache=cache, ledger=ledger)
    auth = providers.Singleton(AuthService, accounts=accounts, cache=cache)
    executor_registry = providers.Singleton(
        ExecutorRegistry,
        http_client=http_client,
        uploader=object_store.provided.upload,
        record_remote_id=tasks.provided.set_remote_task_id,
    )
    submission = providers.Singleton(
        SubmissionService,
        db=db,
        tasks=tasks,
        models=ai_models,
        accounting=accounting,
        queue=queue,
        cache=cache,
    )

    # --- Background loops ---
    worker_pool = providers.Singleton(
        WorkerPool,
        tasks=tasks,
        queue=queue,
        registry=executor_registry,
        accounting=accounting,
    )
    polling = providers.Singleton(
        PollingSupervisor,
        tasks=tasks,
        queue=queue,
        registry=executor_registry,
        accounting=accounting,
    )
