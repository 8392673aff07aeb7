"""Agent Registry - Capability index of specialist agents and their in-flight load."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Collection
from dataclasses import dataclass
from typing import Any

from governor.agents.base import Agent
from governor.audit.log import AuditEvent, AuditLog
from governor.models import AgentDescriptor
from governor.storage.database import Database

logger = logging.getLogger(__name__)


@dataclass
class AgentRecord:
    """Registered agent: descriptor, implementation and live load."""

    descriptor: AgentDescriptor
    agent: Agent
    in_flight: int = 0
    base_limit: int = 1  # limit as registered, before any throttling

    @property
    def agent_id(self) -> str:
        return self.descriptor.agent_id

    @property
    def has_capacity(self) -> bool:
        return self.in_flight < self.descriptor.concurrency_limit


class AgentRegistry:
    """
    Capability-indexed registry of specialist agents.

    Features:
    - Selection by lowest in-flight load, tie-break by agent id
    - Atomic load counters bounded by each agent's concurrency limit
    - Optional database persistence so the CLI and API can list agents
    """

    def __init__(self, audit: AuditLog | None = None, db: Database | None = None) -> None:
        self.audit = audit
        self.db = db
        self._lock = threading.RLock()
        self._agents: dict[str, AgentRecord] = {}
        if db is not None:
            db.ensure_tables()

    def register(self, descriptor: AgentDescriptor, agent: Agent) -> None:
        """Register (or replace) an agent."""
        with self._lock:
            previous = self._agents.get(descriptor.agent_id)
            self._agents[descriptor.agent_id] = AgentRecord(
                descriptor=descriptor,
                agent=agent,
                in_flight=previous.in_flight if previous else 0,
                base_limit=descriptor.concurrency_limit,
            )

        if self.db is not None:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO agents (agent_id, capabilities, concurrency_limit, endpoint, metadata)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(agent_id) DO UPDATE SET
                        capabilities = excluded.capabilities,
                        concurrency_limit = excluded.concurrency_limit,
                        endpoint = excluded.endpoint,
                        metadata = excluded.metadata
                    """,
                    (
                        descriptor.agent_id,
                        json.dumps(sorted(descriptor.capabilities)),
                        descriptor.concurrency_limit,
                        descriptor.endpoint,
                        json.dumps(descriptor.metadata, default=str),
                    ),
                )
        if self.audit is not None:
            self.audit.append(descriptor.agent_id, AuditEvent.AGENT_REGISTERED, descriptor.to_dict())
        logger.info(
            "Registered agent %s for %s", descriptor.agent_id, ", ".join(sorted(descriptor.capabilities))
        )

    def deregister(self, agent_id: str) -> bool:
        """Remove an agent. In-flight calls finish; no new work is routed to it."""
        with self._lock:
            record = self._agents.pop(agent_id, None)
        if record is None:
            return False

        if self.db is not None:
            with self.db.transaction() as conn:
                conn.execute("DELETE FROM agents WHERE agent_id = ?", (agent_id,))
        if self.audit is not None:
            self.audit.append(agent_id, AuditEvent.AGENT_DEREGISTERED, {"in_flight": record.in_flight})
        logger.info("Deregistered agent %s", agent_id)
        return True

    def get(self, agent_id: str) -> AgentRecord | None:
        with self._lock:
            return self._agents.get(agent_id)

    def has_capability(self, capability: str) -> bool:
        with self._lock:
            return any(capability in r.descriptor.capabilities for r in self._agents.values())

    def capabilities(self) -> set[str]:
        with self._lock:
            caps: set[str] = set()
            for record in self._agents.values():
                caps |= record.descriptor.capabilities
            return caps

    def find_agents(self, capability: str) -> list[AgentDescriptor]:
        """Agents offering ``capability``, least loaded first, then by agent id."""
        return [r.descriptor for r in self._candidates(capability)]

    def _candidates(self, capability: str) -> list[AgentRecord]:
        with self._lock:
            records = [r for r in self._agents.values() if capability in r.descriptor.capabilities]
            return sorted(records, key=lambda r: (r.in_flight, r.agent_id))

    def select(
        self,
        capability: str,
        exclude: Collection[str] = (),
        allow: Callable[[str], bool] | None = None,
    ) -> str | None:
        """
        Pick and reserve an agent for ``capability``.

        Skips excluded agents, agents at their concurrency limit and agents
        rejected by ``allow`` (e.g. an open circuit). The chosen agent's load
        is incremented before returning; callers must ``release`` it.
        """
        with self._lock:
            for record in self._candidates(capability):
                if record.agent_id in exclude or not record.has_capacity:
                    continue
                if allow is not None and not allow(record.agent_id):
                    continue
                record.in_flight += 1
                return record.agent_id
        return None

    def acquire(self, agent_id: str) -> bool:
        """Atomically reserve one slot on an agent. False if at its limit."""
        with self._lock:
            record = self._agents.get(agent_id)
            if record is None or not record.has_capacity:
                return False
            record.in_flight += 1
            return True

    def release(self, agent_id: str) -> None:
        with self._lock:
            record = self._agents.get(agent_id)
            if record is not None and record.in_flight > 0:
                record.in_flight -= 1

    def load(self, agent_id: str) -> int:
        with self._lock:
            record = self._agents.get(agent_id)
            return record.in_flight if record else 0

    def set_concurrency_limit(self, agent_id: str, limit: int | None) -> None:
        """Override an agent's limit; ``None`` restores the registered limit."""
        with self._lock:
            record = self._agents.get(agent_id)
            if record is None:
                return
            record.descriptor.concurrency_limit = max(1, limit if limit is not None else record.base_limit)

    def get_stats(self) -> dict[str, Any]:
        """Get registry statistics."""
        with self._lock:
            agents = {
                r.agent_id: {
                    "capabilities": sorted(r.descriptor.capabilities),
                    "in_flight": r.in_flight,
                    "concurrency_limit": r.descriptor.concurrency_limit,
                }
                for r in sorted(self._agents.values(), key=lambda r: r.agent_id)
            }
        return {
            "total_agents": len(agents),
            "in_flight": sum(a["in_flight"] for a in agents.values()),
            "agents": agents,
        }
