"""Services - Execution pipeline entry points and environment management."""

from __future__ import annotations

import logging
import threading
from typing import Mapping

from api_workbench.executor import Executor
from api_workbench.history import HistoryService
from api_workbench.models import (
    ApiRequest,
    Environment,
    EnvironmentVariable,
    ExecutionResponse,
)
from api_workbench.request_builder import build_request
from api_workbench.storage import EnvironmentRepository, RequestRepository

logger = logging.getLogger(__name__)


class ExecutionService:
    """Runs request definitions through the pipeline and records history.

    Every dispatched execution, successful or not, produces exactly one
    history record. Requests rejected before dispatch (InvalidRequestError,
    AuthConfigurationError) raise and record nothing.
    """

    def __init__(
        self,
        executor: Executor,
        history: HistoryService,
        requests: RequestRepository | None = None,
        environments: EnvironmentRepository | None = None,
        default_headers: Mapping[str, str] | None = None,
    ) -> None:
        self._executor = executor
        self._history = history
        self._requests = requests if requests is not None else RequestRepository()
        self._environments = environments if environments is not None else EnvironmentRepository()
        self._default_headers = dict(default_headers or {})

    def execute(
        self,
        request: ApiRequest,
        environment: Environment | None = None,
        cancel_event: threading.Event | None = None,
        deadline: float | None = None,
    ) -> ExecutionResponse:
        """Resolve, build, send and record one request.

        Raises:
            InvalidRequestError: Malformed URL or body; nothing was sent.
            AuthConfigurationError: Auth fields missing; nothing was sent.
        """
        variables = environment.variables_map() if environment is not None else {}
        prepared = build_request(request, variables, self._default_headers)
        response = self._executor.execute(prepared, cancel_event=cancel_event, deadline=deadline)
        self._history.record(prepared, response)
        return response

    def execute_by_id(
        self,
        request_id: int,
        environment_id: int | None = None,
        cancel_event: threading.Event | None = None,
        deadline: float | None = None,
    ) -> ExecutionResponse:
        """Execute a stored request.

        The environment is, in order: the one given, the request's own, or
        the active environment (if any).

        Raises:
            EntityNotFoundError: Unknown request or environment id.
        """
        request = self._requests.get(request_id)
        env_id = environment_id if environment_id is not None else request.environment_id
        if env_id is not None:
            environment = self._environments.get(env_id)
        else:
            environment = self._environments.find_active()
        return self.execute(request, environment, cancel_event=cancel_event, deadline=deadline)


class EnvironmentService:
    """CRUD over environments plus single-active-environment selection."""

    def __init__(self, repository: EnvironmentRepository) -> None:
        self._repository = repository

    def create(
        self,
        name: str,
        description: str | None = None,
        variables: list[EnvironmentVariable] | None = None,
    ) -> Environment:
        environment = Environment.create(name, description)
        if variables:
            environment.set_variables(variables)
        saved = self._repository.save(environment)
        logger.info("Created environment %d (%s)", saved.id, saved.name)
        return saved

    def get(self, environment_id: int) -> Environment:
        return self._repository.get(environment_id)

    def list_all(self) -> list[Environment]:
        return self._repository.list_all()

    def update(
        self,
        environment_id: int,
        name: str | None = None,
        description: str | None = None,
        variables: list[EnvironmentVariable] | None = None,
    ) -> Environment:
        """Apply the given changes; None leaves a field unchanged."""
        environment = self._repository.get(environment_id)
        if name is not None:
            environment.rename(name)
        if description is not None:
            environment.update_description(description)
        if variables is not None:
            environment.set_variables(variables)
        return self._repository.save(environment)

    def delete(self, environment_id: int) -> None:
        self._repository.get(environment_id)
        self._repository.delete(environment_id)
        logger.info("Deleted environment %d", environment_id)

    def activate(self, environment_id: int) -> Environment:
        """Make one environment active and deactivate all others."""
        target = self._repository.get(environment_id)
        for environment in self._repository.list_all():
            if environment.active and environment.id != environment_id:
                environment.deactivate()
                self._repository.save(environment)
        target.activate()
        return self._repository.save(target)

    def get_active(self) -> Environment | None:
        return self._repository.find_active()
