"""Proxy rule endpoints."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from smartdock.core.proxy import ProxyRule, ProxyRuleInput
from smartdock.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/proxy", tags=["proxy"])


@router.get("/rules")
async def list_rules(services: Services = Depends(get_services)) -> list[ProxyRule]:
    return services.proxy.list_rules()


@router.post("/rules")
async def create_rule(
    data: ProxyRuleInput,
    services: Services = Depends(get_services),
) -> ProxyRule:
    """Create a rule; a taken subdomain/domain pair is rejected with 409."""
    return await services.proxy.upsert(data)


@router.put("/rules/{rule_id}")
async def replace_rule(
    rule_id: str,
    data: ProxyRuleInput,
    services: Services = Depends(get_services),
) -> ProxyRule:
    return await services.proxy.upsert(data.model_copy(update={"id": rule_id}))


@router.delete("/rules/{rule_id}")
async def delete_rule(
    rule_id: str,
    services: Services = Depends(get_services),
) -> dict:
    """Delete an operator rule. Auto-generated rules answer 403."""
    removed = await services.proxy.remove(rule_id)
    return {"status": "success", "id": rule_id, "removed": removed}


@router.get("/config", response_class=PlainTextResponse)
async def get_config(services: Services = Depends(get_services)) -> str:
    """The Caddyfile as last written."""
    return services.proxy.artifact.text


@router.post("/reconcile")
async def reconcile_rules(services: Services = Depends(get_services)) -> dict:
    """Regenerate label-driven rules from the current containers."""
    workloads = await services.workloads.list_workloads()
    artifact = await services.proxy.reconcile(workloads)
    return {
        "status": "success",
        "rules": len(services.proxy.list_rules()),
        "active": artifact.active_count,
        "errors": artifact.errors,
    }
