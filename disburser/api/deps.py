from typing import Annotated, Awaitable, Callable

from fastapi import Depends, Request

from disburser.scheduler.service import PaymentScheduler
from disburser.services.events import EventBus
from disburser.stores.base import JobStore
from disburser.stores.clients import SqlClientSource

# Services are built once in the lifespan and parked on app.state
def get_scheduler(request: Request) -> PaymentScheduler:
    return request.app.state.scheduler

def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store

def get_client_source(request: Request) -> SqlClientSource:
    return request.app.state.client_source

def get_event_bus(request: Request) -> EventBus:
    return request.app.state.events

def get_db_check(request: Request) -> Callable[[], Awaitable[bool]]:
    return request.app.state.db_check

SchedulerDep = Annotated[PaymentScheduler, Depends(get_scheduler)]
JobStoreDep = Annotated[JobStore, Depends(get_job_store)]
ClientSourceDep = Annotated[SqlClientSource, Depends(get_client_source)]
EventBusDep = Annotated[EventBus, Depends(get_event_bus)]
DbCheckDep = Annotated[Callable[[], Awaitable[bool]], Depends(get_db_check)]
