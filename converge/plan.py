"""
Plan: descriptors plus prerequisite edges, executed one step at a time.

Edges live in a networkx DiGraph (prerequisite -> dependent). Order is
topological with ties broken by declaration order, so a plan written in
the order of the old numbered scripts runs in that order.
"""

from __future__ import annotations

import dataclasses
import time
from typing import Callable, Dict, Iterable, List, Optional, Set

import networkx as nx

from .adapters.base import Registry
from .config import Settings
from .errors import ConvergeError, PlanError
from .model import ResourceDescriptor, Status, StepOutcome
from .poll import Poller
from .step import ConvergenceStep

OnOutcome = Callable[[StepOutcome], None]


class Plan:
    def __init__(
        self,
        settings: Settings,
        registry: Registry,
        descriptors: Iterable[ResourceDescriptor] = (),
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.sleep = sleep
        self.graph = nx.DiGraph()
        self.status: Dict[str, Status] = {}
        self._resolved = False
        for d in descriptors:
            self.add(d)

    # -------------------------
    # Building
    # -------------------------

    def add(self, desc: ResourceDescriptor) -> None:
        if desc.key in self.graph:
            raise PlanError(f"Duplicate resource: {desc.key}")
        adapter = self.registry.get(desc.kind)
        try:
            adapter.validate(desc)
        except ConvergeError as ex:
            raise PlanError(str(ex)) from ex
        self.graph.add_node(desc.key, descriptor=desc, index=self.graph.number_of_nodes())
        self.status[desc.key] = Status.PENDING
        self._resolved = False

    def descriptor(self, key: str) -> ResourceDescriptor:
        return self.graph.nodes[key]["descriptor"]

    def __len__(self) -> int:
        return self.graph.number_of_nodes()

    def __contains__(self, key: str) -> bool:
        return key in self.graph

    def resolve(self) -> None:
        """Turn 'requires' into edges; reject unknown prerequisites and cycles."""
        if self._resolved:
            return
        self.graph.remove_edges_from(list(self.graph.edges))
        for key in list(self.graph.nodes):
            desc = self.descriptor(key)
            for req in desc.requires:
                for pre in self._expand(req, key):
                    self.graph.add_edge(pre, key)

        if not nx.is_directed_acyclic_graph(self.graph):
            cycle = nx.find_cycle(self.graph)
            path = " -> ".join([u for u, _ in cycle] + [cycle[0][0]])
            raise PlanError(f"Prerequisite cycle: {path}")
        self._resolved = True

    def _expand(self, req: str, owner: str) -> List[str]:
        kind, _, ident = req.partition(":")
        if ident == "*":
            # dependency gate: every resource of that kind, except the owner
            return [
                k for k in self.graph.nodes
                if k != owner and self.descriptor(k).kind == kind
            ]
        if req not in self.graph:
            raise PlanError(f"{owner}: unknown prerequisite {req}")
        if req == owner:
            raise PlanError(f"{owner}: requires itself")
        return [req]

    def order(self) -> List[ResourceDescriptor]:
        self.resolve()
        keys = nx.lexicographical_topological_sort(
            self.graph, key=lambda k: self.graph.nodes[k]["index"]
        )
        return [self.descriptor(k) for k in keys]

    def prerequisites(self, key: str) -> List[str]:
        self.resolve()
        return sorted(self.graph.predecessors(key), key=lambda k: self.graph.nodes[k]["index"])

    def select(self, keys: Iterable[str] = (), kinds: Iterable[str] = ()) -> "Plan":
        """A new plan with the chosen resources and everything they depend on."""
        self.resolve()
        kinds = set(kinds)
        chosen: Set[str] = set()
        for k in keys:
            if k not in self.graph:
                raise PlanError(f"Unknown resource: {k}")
            chosen.add(k)
        chosen.update(k for k in self.graph.nodes if self.descriptor(k).kind in kinds)
        if not chosen:
            raise PlanError("Selection matched no resources")

        closure = set(chosen)
        for k in chosen:
            closure.update(nx.ancestors(self.graph, k))
        ordered = [d for d in self.order() if d.key in closure]

        sub = Plan(self.settings, self.registry, sleep=self.sleep)
        for d in ordered:
            # Wildcard gates keep only the prerequisites that made the cut
            sub.graph.add_node(d.key, descriptor=d, index=sub.graph.number_of_nodes())
            sub.status[d.key] = Status.PENDING
        for u, v in self.graph.edges:
            if u in closure and v in closure:
                sub.graph.add_edge(u, v)
        sub._resolved = True
        return sub

    def systems(self) -> List[str]:
        return sorted({self.registry.get(d.kind).system for d in self.order()})

    # -------------------------
    # Running
    # -------------------------

    def step(self, desc: ResourceDescriptor) -> ConvergenceStep:
        s = self.settings
        return ConvergenceStep(
            desc,
            self.registry.get(desc.kind),
            dry_run=s.dry_run,
            settle=Poller(interval=s.poll_interval, attempts=s.poll_attempts, sleep=self.sleep),
        )

    def gate_passed(self, key: str) -> bool:
        status = self.status[key]
        return status.passed or (self.settings.dry_run and status is Status.DRIFTED)

    def run_step(self, desc: ResourceDescriptor) -> StepOutcome:
        self.status[desc.key] = Status.RUNNING
        step = self.step(desc)
        outcome = step.run()
        acted = step.acted
        probes = outcome.attempts
        attempt = 0
        while outcome.status is Status.FAILED and attempt < self.settings.retries:
            attempt += 1
            self.sleep(self.settings.retry_interval)
            step = self.step(desc)
            outcome = step.run()
            acted = acted or step.acted
            probes += outcome.attempts
        if outcome.status is Status.SATISFIED and acted:
            # an earlier attempt's action landed after its verification gave up
            outcome = dataclasses.replace(
                outcome,
                status=Status.CONVERGED,
                detail="applied on an earlier attempt, verified on retry",
                attempts=probes + 1,
            )
        self.status[desc.key] = outcome.status
        return outcome

    def run(self, on_outcome: Optional[OnOutcome] = None) -> List[StepOutcome]:
        """Execute every step in order; returns one outcome per resource.

        Under fail-fast, resources after the first failure are reported
        PENDING (never started). Under best-effort, resources whose
        prerequisites did not pass are BLOCKED and never started.
        """
        outcomes: List[StepOutcome] = []
        halted = False
        for desc in self.order():
            if halted:
                outcomes.append(
                    StepOutcome(desc.kind, desc.identifier, Status.PENDING, "not run (halted)")
                )
                continue

            unmet = [p for p in self.prerequisites(desc.key) if not self.gate_passed(p)]
            if unmet:
                self.status[desc.key] = Status.BLOCKED
                outcome = StepOutcome(
                    desc.kind,
                    desc.identifier,
                    Status.BLOCKED,
                    f"prerequisite not met: {', '.join(unmet)}",
                )
            else:
                outcome = self.run_step(desc)

            outcomes.append(outcome)
            if on_outcome is not None:
                on_outcome(outcome)
            if outcome.status is Status.FAILED and self.settings.fail_fast:
                halted = True
        return outcomes
