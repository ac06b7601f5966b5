"""Async HTTP client for the OutSystems app generation, publication and application APIs."""

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from osgen.errors import TransportFailure
from osgen.schemas import ApplicationDetails, JobStatus, PublicationStatus

logger = logging.getLogger("osgen")

JOBS_PATH = "/api/app-generation/v1alpha3/jobs"
PUBLICATIONS_PATH = "/api/v1/publications"
APPLICATIONS_PATH = "/api/v1/applications"


class OutSystemsClient:
    """Thin wrapper over ``httpx.AsyncClient``.

    Every call takes the bearer token explicitly and carries its own timeout.
    Non-success statuses, timeouts and connection errors all surface as
    :class:`TransportFailure`; nothing is retried here.
    """

    def __init__(
        self,
        hostname: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.hostname = hostname
        self._client = httpx.AsyncClient(
            base_url=f"https://{hostname}",
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "OutSystemsClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # --- app generation -------------------------------------------------

    async def create_job(self, token: str, prompt: str) -> JobStatus:
        body = {"prompt": prompt, "files": [], "ignoreTenantContext": True}
        data = await self._request("POST", JOBS_PATH, token, "createJob", json=body)
        return _parse(JobStatus, data)

    async def get_job_status(self, token: str, job_id: str) -> JobStatus:
        data = await self._request("GET", f"{JOBS_PATH}/{job_id}", token, "getJobStatus")
        return _parse(JobStatus, data)

    async def trigger_generation(self, token: str, job_id: str) -> None:
        await self._request("POST", f"{JOBS_PATH}/{job_id}/generation", token, "triggerGeneration", expect_body=False)

    # --- publication ----------------------------------------------------

    async def create_publication(self, token: str, application_key: str) -> PublicationStatus:
        body = {"applicationKey": application_key, "applicationRevision": 1, "downloadUrl": None}
        data = await self._request("POST", PUBLICATIONS_PATH, token, "createPublication", json=body)
        return _parse(PublicationStatus, data)

    async def get_publication_status(self, token: str, publication_key: str) -> PublicationStatus:
        data = await self._request(
            "GET", f"{PUBLICATIONS_PATH}/{publication_key}", token, "getPublicationStatus",
        )
        return _parse(PublicationStatus, data)

    async def get_application_details(self, token: str, application_key: str) -> ApplicationDetails:
        data = await self._request(
            "GET", f"{APPLICATIONS_PATH}/{application_key}", token, "getApplicationDetails",
        )
        return _parse(ApplicationDetails, data)

    # --- plumbing -------------------------------------------------------

    async def _request(self, method: str, path: str, token: str, operation: str, expect_body: bool = True, **kwargs) -> Any:
        headers = {"Authorization": f"Bearer {token}"}
        logger.debug("%s %s (%s)", method, path, operation)
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportFailure(f"API Error ({operation}): request timed out") from e
        except httpx.HTTPError as e:
            raise TransportFailure(f"API Error ({operation}): {e}") from e

        if not response.is_success:
            raise TransportFailure(
                f"API Error ({operation}): {response.status_code} {response.text}",
                status_code=response.status_code,
            )

        if not expect_body or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TransportFailure(f"API Error ({operation}): response is not JSON") from e


def _parse(model, data):
    try:
        return model.model_validate(data or {})
    except ValidationError as e:
        raise TransportFailure(f"Unexpected {model.__name__} payload: {e}") from e
