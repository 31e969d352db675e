"""
Vercel REST client for hosting deployments.

Access tokens come from the vercel_integrations collection (written when an
organization installs the Vercel integration), keyed by installation id and
stored Fernet-encrypted.
"""
import os
import logging
from typing import Optional, Dict, Any, List

import httpx

from database import database
from services.collaborators import HostingPlatform, HostingResult
from utils.crypto import decrypt_secret

logger = logging.getLogger(__name__)

VERCEL_API_BASE = os.getenv("VERCEL_API_BASE", "https://api.vercel.com")
ENV_TARGETS = ["production", "preview", "development"]


class VercelClient(HostingPlatform):
    """Vercel API integration for project creation, env vars and deployment status."""

    def __init__(self):
        self.base_url = VERCEL_API_BASE

    async def _get_credentials(self, installation_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        integration = await db.vercel_integrations.find_one(
            {"installationId": installation_id},
            {"_id": 0},
        )
        if not integration or not integration.get("accessToken"):
            return None
        return {
            "token": decrypt_secret(integration["accessToken"]),
            "team_id": integration.get("teamId"),
        }

    def _params(self, credentials: Dict[str, Any], **extra) -> Dict[str, Any]:
        params = {k: v for k, v in extra.items() if v is not None}
        if credentials.get("team_id"):
            params["teamId"] = credentials["team_id"]
        return params

    def _headers(self, credentials: Dict[str, Any]) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {credentials['token']}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _error(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            error = error.get("message")
        message = error if isinstance(error, str) else None
        return message or f"Vercel API error {response.status_code}: {response.text[:200]}"

    async def create_project(self, installation_id: str, name: str, framework: str = "nextjs") -> HostingResult:
        """Create a project; an existing project with the same name is returned as-is."""
        credentials = await self._get_credentials(installation_id)
        if not credentials:
            return HostingResult(success=False, error="Vercel integration not found")

        async with httpx.AsyncClient(base_url=self.base_url, timeout=30.0) as client:
            response = await client.post(
                "/v9/projects",
                params=self._params(credentials),
                headers=self._headers(credentials),
                json={"name": name, "framework": framework},
            )
            if response.status_code == 409:
                logger.info(f"Vercel: project {name} already exists, reusing")
                response = await client.get(
                    f"/v9/projects/{name}",
                    params=self._params(credentials),
                    headers=self._headers(credentials),
                )

        if response.status_code not in (200, 201):
            error = self._error(response)
            logger.error(f"Vercel: create project {name} failed: {error}")
            return HostingResult(success=False, error=error)

        project = response.json()
        logger.info(f"Vercel: project ready {project.get('id')} ({name})")
        return HostingResult(success=True, data=project)

    async def push_environment_variables(
        self, installation_id: str, project_id: str, env_vars: Dict[str, str]
    ) -> HostingResult:
        """Upsert every variable on all targets. NEXT_PUBLIC_ values are plain, the rest encrypted."""
        credentials = await self._get_credentials(installation_id)
        if not credentials:
            return HostingResult(success=False, error="Vercel integration not found")

        async with httpx.AsyncClient(base_url=self.base_url, timeout=30.0) as client:
            existing_response = await client.get(
                f"/v10/projects/{project_id}/env",
                params=self._params(credentials),
                headers=self._headers(credentials),
            )
            if existing_response.status_code != 200:
                return HostingResult(success=False, error=self._error(existing_response))
            existing: List[Dict[str, Any]] = existing_response.json().get("envs", [])
            existing_ids = {e.get("key"): e.get("id") for e in existing}

            for key, value in env_vars.items():
                body = {
                    "key": key,
                    "value": value,
                    "type": "plain" if key.startswith("NEXT_PUBLIC_") else "encrypted",
                    "target": ENV_TARGETS,
                }
                if key in existing_ids:
                    response = await client.patch(
                        f"/v9/projects/{project_id}/env/{existing_ids[key]}",
                        params=self._params(credentials),
                        headers=self._headers(credentials),
                        json=body,
                    )
                else:
                    response = await client.post(
                        f"/v10/projects/{project_id}/env",
                        params=self._params(credentials),
                        headers=self._headers(credentials),
                        json=body,
                    )
                if response.status_code not in (200, 201):
                    error = self._error(response)
                    logger.error(f"Vercel: env var {key} push failed for {project_id}: {error}")
                    return HostingResult(success=False, error=error)

        logger.info(f"Vercel: pushed {len(env_vars)} env vars to {project_id}")
        return HostingResult(success=True, data={"count": len(env_vars)})

    async def get_latest_deployment(self, installation_id: str, project_id: str) -> HostingResult:
        credentials = await self._get_credentials(installation_id)
        if not credentials:
            return HostingResult(success=False, error="Vercel integration not found")

        async with httpx.AsyncClient(base_url=self.base_url, timeout=30.0) as client:
            response = await client.get(
                "/v6/deployments",
                params=self._params(credentials, projectId=project_id, limit=1),
                headers=self._headers(credentials),
            )
        if response.status_code != 200:
            return HostingResult(success=False, error=self._error(response))

        deployments = response.json().get("deployments", [])
        if not deployments:
            return HostingResult(success=True, data={})
        latest = deployments[0]
        return HostingResult(
            success=True,
            data={
                "id": latest.get("uid"),
                "url": latest.get("url"),
                "state": latest.get("state") or latest.get("readyState"),
            },
        )


vercel_client = VercelClient()
