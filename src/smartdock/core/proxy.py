"""Reverse-proxy rules and Caddyfile compilation.

The compiler owns the rule set. Every mutation rebuilds the whole Caddyfile
from the complete rule set, hands it to the artifact sink and only then
publishes events, all inside one lock so a published artifact always matches
a rule set that actually existed.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Protocol
from urllib.parse import urlsplit
from uuid import uuid4

from pydantic import BaseModel, Field

from smartdock.core.errors import (
    CompilationError,
    DuplicateRuleError,
    NotFoundError,
    ProtectedRuleError,
)
from smartdock.core.events import EventBus, EventType
from smartdock.core.runtime import PORT_LABEL, WorkloadSummary
from smartdock.core.store import YamlStore

logger = logging.getLogger(__name__)

CADDYFILE_HEADER = "# Managed by SmartDock. Manual edits are overwritten."

_HOST_LABEL = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")


# =============================================================================
# Models
# =============================================================================


class RuleStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    PENDING = "pending"


class ProxyRuleInput(BaseModel):
    """Fields accepted from the operator when creating or replacing a rule."""

    id: Optional[str] = None
    subdomain: str = ""
    domain: str = ""
    target: str = Field("", description="Upstream URL, e.g. http://127.0.0.1:3000")
    container: Optional[str] = None
    ssl: bool = True
    health_check: bool = True
    enabled: bool = True


class ProxyRule(BaseModel):
    """A stored routing rule."""

    id: str
    subdomain: str = ""
    domain: str = ""
    target: str = ""
    container: Optional[str] = None
    ssl: bool = True
    health_check: bool = True
    enabled: bool = True
    auto_generated: bool = False
    status: RuleStatus = RuleStatus.PENDING
    last_check: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.subdomain.strip().lower(), self.domain.strip().lower())

    @property
    def host(self) -> str:
        subdomain, domain = self.key
        return f"{subdomain}.{domain}" if subdomain else domain


class ConfigArtifact(BaseModel):
    """Compiled Caddyfile and the per-rule result of compiling it."""

    text: str
    statuses: dict[str, RuleStatus] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)

    @property
    def active_count(self) -> int:
        return sum(1 for s in self.statuses.values() if s == RuleStatus.ACTIVE)


# =============================================================================
# Compilation
# =============================================================================


def _upstream_for(rule: ProxyRule) -> tuple[str, str]:
    """Validate a rule and return (site host, reverse_proxy upstream)."""
    missing = [
        name for name in ("subdomain", "domain", "target")
        if not getattr(rule, name).strip()
    ]
    if missing:
        raise CompilationError(rule.id, f"missing {', '.join(missing)}")

    host = rule.host
    for label in host.split("."):
        if not _HOST_LABEL.match(label):
            raise CompilationError(rule.id, f"invalid hostname {host!r}")

    target = rule.target.strip()
    parts = urlsplit(target if "://" in target else f"http://{target}")
    if parts.scheme not in ("http", "https"):
        raise CompilationError(rule.id, f"unsupported scheme {parts.scheme!r}")
    if not parts.hostname:
        raise CompilationError(rule.id, f"target {target!r} has no host")
    try:
        parts.port
    except ValueError:
        raise CompilationError(rule.id, f"target {target!r} has an invalid port")
    if parts.path not in ("", "/") or parts.query:
        raise CompilationError(rule.id, "upstream paths are not supported")

    upstream = parts.netloc if parts.scheme == "http" else f"https://{parts.netloc}"
    return host, upstream


def _site_block(
    rule: ProxyRule,
    host: str,
    upstream: str,
    tls_email: Optional[str],
    health_uri: str,
) -> list[str]:
    address = host if rule.ssl else f"http://{host}"
    lines = [f"# rule {rule.id}", f"{address} {{"]
    if rule.ssl:
        lines.append(f"\ttls {tls_email or 'internal'}")
    if rule.health_check:
        lines.append(f"\treverse_proxy {upstream} {{")
        lines.append(f"\t\thealth_uri {health_uri}")
        lines.append("\t}")
    else:
        lines.append(f"\treverse_proxy {upstream}")
    lines.append("}")
    return lines


def compile_caddyfile(
    rules: Iterable[ProxyRule],
    tls_email: Optional[str] = None,
    health_uri: str = "/",
) -> ConfigArtifact:
    """Render rules, ordered by id, into a Caddyfile.

    Malformed rules are reported in ``errors`` and left out; they never abort
    the rest of the file.
    """
    statuses: dict[str, RuleStatus] = {}
    errors: dict[str, str] = {}
    lines = [CADDYFILE_HEADER]

    for rule in sorted(rules, key=lambda r: r.id):
        if not rule.enabled:
            statuses[rule.id] = RuleStatus.INACTIVE
            continue
        try:
            host, upstream = _upstream_for(rule)
        except CompilationError as e:
            statuses[rule.id] = RuleStatus.ERROR
            errors[rule.id] = e.reason
            continue
        lines.append("")
        lines.extend(_site_block(rule, host, upstream, tls_email, health_uri))
        statuses[rule.id] = RuleStatus.ACTIVE

    return ConfigArtifact(text="\n".join(lines) + "\n", statuses=statuses, errors=errors)


# =============================================================================
# Artifact sinks
# =============================================================================


class ArtifactSink(Protocol):
    def write(self, artifact: str) -> None: ...


class FileArtifactSink:
    """Writes the Caddyfile to disk (atomic write)."""

    def __init__(self, path: Path):
        self.path = path

    def write(self, artifact: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(artifact)
        tmp_path.rename(self.path)


class MemoryArtifactSink:
    """Keeps every written artifact; used when no proxy is configured."""

    def __init__(self):
        self.writes: list[str] = []

    @property
    def last(self) -> Optional[str]:
        return self.writes[-1] if self.writes else None

    def write(self, artifact: str) -> None:
        self.writes.append(artifact)


# =============================================================================
# Compiler
# =============================================================================


class ProxyRuleCompiler:
    """Owns routing rules and keeps the compiled artifact in sync with them."""

    def __init__(
        self,
        bus: EventBus,
        sink: Optional[ArtifactSink] = None,
        store: Optional[YamlStore[ProxyRule]] = None,
        tls_email: Optional[str] = None,
        health_uri: str = "/",
        main_domain: str = "localhost",
    ):
        self.bus = bus
        self.sink = sink or MemoryArtifactSink()
        self.store = store
        self.tls_email = tls_email
        self.health_uri = health_uri
        self.main_domain = main_domain

        self._rules: dict[str, ProxyRule] = {}
        self._lock = asyncio.Lock()
        self.artifact = self._render(())

    async def start(self) -> None:
        """Load persisted rules and write the initial artifact."""
        async with self._lock:
            rules = {}
            if self.store is not None:
                rules = {rule.id: rule for rule in self.store.load()}
            self._commit(rules, changed=[], removed=[])
        logger.info(f"Loaded {len(self._rules)} proxy rules")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, rule_id: str) -> ProxyRule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise NotFoundError(f"Proxy rule {rule_id} not found")
        return rule

    def list_rules(self) -> list[ProxyRule]:
        return [self._rules[rule_id] for rule_id in sorted(self._rules)]

    def compile(self) -> ConfigArtifact:
        """Render the current rule set without side effects."""
        return self._render(self._rules.values())

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def upsert(self, data: ProxyRuleInput) -> ProxyRule:
        """Create or replace an operator rule."""
        async with self._lock:
            rule_id = data.id or uuid4().hex[:12]
            existing = self._rules.get(rule_id)
            if existing is not None and existing.auto_generated:
                raise ProtectedRuleError(
                    f"Proxy rule {rule_id} is managed from container labels"
                )

            rule = ProxyRule(**data.model_dump(exclude={"id"}), id=rule_id)
            self._check_unique(rule, self._rules)

            rules = dict(self._rules)
            rules[rule_id] = rule
            self._commit(rules, changed=[rule], removed=[])
            logger.info(f"Proxy rule {rule_id} saved for {rule.host} -> {rule.target}")
            return self._rules[rule_id]

    async def remove(self, rule_id: str, allow_auto_generated: bool = False) -> bool:
        """Delete a rule. Unknown ids are a no-op and return False."""
        async with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return False
            if rule.auto_generated and not allow_auto_generated:
                raise ProtectedRuleError(
                    f"Proxy rule {rule_id} is removed with its container"
                )

            rules = dict(self._rules)
            del rules[rule_id]
            self._commit(rules, changed=[], removed=[rule])
            logger.info(f"Proxy rule {rule_id} removed ({rule.host})")
            return True

    async def reconcile(self, workloads: list[WorkloadSummary]) -> ConfigArtifact:
        """Sync auto-generated rules with container labels.

        Containers carrying ``smartdock.domain`` and ``smartdock.port`` get a
        rule; auto-generated rules whose container disappeared are removed.
        """
        async with self._lock:
            present = {w.id for w in workloads} | {w.name for w in workloads}
            rules = dict(self._rules)
            changed: list[ProxyRule] = []
            removed: list[ProxyRule] = []

            for rule in list(rules.values()):
                if rule.auto_generated and rule.container not in present:
                    removed.append(rules.pop(rule.id))

            for workload in sorted(workloads, key=lambda w: w.name):
                rule = self._rule_from_labels(workload)
                if rule is None:
                    continue
                current = rules.get(rule.id)
                if current is not None and current.model_dump(
                    include={"subdomain", "domain", "target", "container"}
                ) == rule.model_dump(include={"subdomain", "domain", "target", "container"}):
                    continue
                others = {k: v for k, v in rules.items() if k != rule.id}
                try:
                    self._check_unique(rule, others)
                except DuplicateRuleError as e:
                    logger.warning(f"Not generating rule for {workload.name}: {e}")
                    continue
                rules[rule.id] = rule
                changed.append(rule)

            if changed or removed:
                self._commit(rules, changed=changed, removed=removed)
                logger.info(
                    f"Reconciled proxy rules: {len(changed)} generated, "
                    f"{len(removed)} removed"
                )
            return self.artifact

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _render(self, rules: Iterable[ProxyRule]) -> ConfigArtifact:
        return compile_caddyfile(rules, tls_email=self.tls_email, health_uri=self.health_uri)

    def _check_unique(self, rule: ProxyRule, rules: dict[str, ProxyRule]) -> None:
        for other in rules.values():
            if other.id != rule.id and other.key == rule.key:
                raise DuplicateRuleError(rule.host, other.id)

    def _rule_from_labels(self, workload: WorkloadSummary) -> Optional[ProxyRule]:
        host = (workload.domain or "").strip().lower()
        port = workload.labels.get(PORT_LABEL, "").strip()
        if not host or not port:
            return None
        subdomain, _, domain = host.partition(".")
        if not domain:
            domain = self.main_domain
        return ProxyRule(
            id=f"auto-{workload.name}",
            subdomain=subdomain,
            domain=domain,
            target=f"http://{workload.name}:{port}",
            container=workload.name,
            auto_generated=True,
        )

    def _commit(
        self,
        rules: dict[str, ProxyRule],
        changed: list[ProxyRule],
        removed: list[ProxyRule],
    ) -> None:
        """Compile, persist, swap in, write, then publish. Caller holds the lock.

        Nothing in memory changes unless the store accepted the new rule set.
        """
        artifact = self._render(rules.values())
        now = datetime.now(timezone.utc)
        committed: dict[str, ProxyRule] = {}
        for rule_id, rule in rules.items():
            committed[rule_id] = rule.model_copy(
                update={
                    "status": artifact.statuses[rule_id],
                    "error": artifact.errors.get(rule_id),
                    "last_check": now,
                }
            )
            if rule_id in artifact.errors:
                logger.warning(f"Proxy rule {rule_id} excluded: {artifact.errors[rule_id]}")

        self._save(committed)
        self._rules = committed
        self.artifact = artifact
        self._write(artifact)

        for rule in changed:
            self.bus.emit(
                EventType.RULE_CHANGED,
                action="upserted",
                rule=committed[rule.id].model_dump(mode="json"),
            )
        for rule in removed:
            self.bus.emit(
                EventType.RULE_CHANGED, action="removed", rule=rule.model_dump(mode="json")
            )
        self.bus.emit(
            EventType.CONFIG_REGENERATED,
            rules=len(committed),
            active=artifact.active_count,
            errors=artifact.errors,
        )

    def _write(self, artifact: ConfigArtifact) -> None:
        try:
            self.sink.write(artifact.text)
        except Exception as e:
            logger.error(f"Failed to write proxy configuration: {e}")

    def _save(self, rules: dict[str, ProxyRule]) -> None:
        if self.store is not None:
            self.store.save([rules[rule_id] for rule_id in sorted(rules)])
