"""
Seed a workspace: SDK signing key, a client app API key, and optionally a
webhook endpoint. Prints a ready-to-use ingestion token.

Usage:
    python scripts/seed_workspace.py --workspace w1
    python scripts/seed_workspace.py --workspace w1 --webhook-url https://example.com/hooks --tenant t1
"""
import argparse
import asyncio
import logging
import secrets

from sqlalchemy import select

from eventrelay.database import async_session_factory
from eventrelay.models.client_app import ClientApp
from eventrelay.models.webhook_endpoint import WebhookEndpoint
from eventrelay.models.workspace_secret import WorkspaceSecret
from eventrelay.utils.encryption import decrypt_secret, encrypt_secret
from eventrelay.utils.ingestion_tokens import issue_ingestion_token

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def seed(workspace_id: str, webhook_url: str = None, tenant_id: str = None, ttl: int = 3600):
    async with async_session_factory() as db:
        result = await db.execute(
            select(WorkspaceSecret).where(WorkspaceSecret.workspace_id == workspace_id)
        )
        existing = result.scalar_one_or_none()
        if existing:
            logger.info("Workspace %s already has a signing key - leaving it in place", workspace_id)
            signing_key = decrypt_secret(existing.sdk_signing_key)
        else:
            signing_key = secrets.token_urlsafe(32)
            db.add(WorkspaceSecret(workspace_id=workspace_id, sdk_signing_key=encrypt_secret(signing_key)))
            logger.info("Created signing key for workspace %s", workspace_id)

        api_key = "er_" + secrets.token_hex(16)
        db.add(ClientApp(workspace_id=workspace_id, name=f"{workspace_id} app", api_key=api_key))

        webhook_secret = None
        if webhook_url:
            webhook_secret = "whsec_" + secrets.token_hex(24)
            db.add(WebhookEndpoint(
                tenant_id=tenant_id or workspace_id,
                name="seeded endpoint",
                url=webhook_url,
                signing_secret=encrypt_secret(webhook_secret),
                subscribed_event_types=["*"],
            ))

        await db.commit()

    token = issue_ingestion_token(workspace_id, signing_key, ttl_seconds=ttl)
    print(f"workspace:      {workspace_id}")
    print(f"api key:        {api_key}")
    print(f"ingest token:   {token}")
    if webhook_secret:
        print(f"webhook secret: {webhook_secret}")


def main():
    parser = argparse.ArgumentParser(description="Seed an EventRelay workspace")
    parser.add_argument("--workspace", required=True)
    parser.add_argument("--webhook-url")
    parser.add_argument("--tenant", help="Tenant id for the webhook endpoint (default: workspace id)")
    parser.add_argument("--ttl", type=int, default=3600, help="Token lifetime in seconds")
    args = parser.parse_args()
    asyncio.run(seed(args.workspace, args.webhook_url, args.tenant, args.ttl))


if __name__ == "__main__":
    main()
