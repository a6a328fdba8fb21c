#!/usr/bin/env python3
"""
RULESIM: resource-transformation rules for tick-based agent simulations.

- Parses resource files and rule files (line-oriented DSL)
- Runs rules against layered resource pools once per tick
- Drives small scenarios from the command line with periodic status reports

Usage:
  python3 -m rulesim resources.txt rules.txt scenario.txt [-v]

Notes:
- Rules are evaluated in list order and mutate pools in place, so the
  effects of one rule are visible to the rules after it in the same tick.
- A rule whose period is 0 never fires on its own; it can only be reached
  as another rule's onfail target.

Grammar (all three dialects share the same line scanner):

DSL_GRAMMAR_BEGIN
(* Line oriented. Leading and trailing whitespace is ignored.
   Empty lines and lines starting with '#' are skipped. *)

resource_file      = { resource_block } ;
resource_block     = "resource" name NL { resource_directive NL } "end" NL ;
resource_directive = "singular" text
                   | "plural" text ;

rule_file          = { rule_block } ;
rule_block         = "rule" name NL { rule_directive NL } "end" NL ;
rule_directive     = "in" specifier
                   | "out" specifier
                   | "set" specifier
                   | "if" [ relation ] resource op integer
                   | "every" integer
                   | "repeat" integer
                   | "repeat" "using" [ relation ] resource
                   | "onfail" name ;
specifier          = [ relation ] resource integer ;
relation           = "self" | "global" | "location" | word ;
op                 = "=" | ">" | "<" | ">=" | "<=" ;

scenario_file      = { world_block | agent_block } ;
world_block        = "world" [ name ] NL { world_directive NL } "end" NL ;
world_directive    = "ticks" integer
                   | "report_every" integer
                   | "snapshot_every" integer
                   | pool
                   | rules ;
agent_block        = "agent" name NL { agent_directive NL } "end" NL ;
agent_directive    = pool
                   | rules
                   | "relation" relation name ;
pool               = "pool" resource ( integer | "unlimited" ) integer ;
rules              = "rules" name { name } ;
DSL_GRAMMAR_END
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union
import itertools
import json
import logging
import os
import sys

log = logging.getLogger("rulesim")

# -----------------------------
# Constants
# -----------------------------

# Well-known relations. Hosts may wire additional relation names.
RELATION_SELF = "self"
RELATION_GLOBAL = "global"
RELATION_LOCATION = "location"

# Comparison operators
OP_UNKNOWN = -1
OP_EQ = 0
OP_GT = 1
OP_GE = 2
OP_LT = 3
OP_LE = 4

OP_SYMBOLS = {
    OP_EQ: "=",
    OP_GT: ">",
    OP_GE: ">=",
    OP_LT: "<",
    OP_LE: "<=",
}

# Capacity used for pools that should never clamp.
UNLIMITED = 2**63 - 1

# Handles for resources and rules; unique for the life of the process.
_handles = itertools.count(1)

Source = Union[str, Iterable[str]]


# -----------------------------
# Errors
# -----------------------------

class ParseError(ValueError):
    """Raised for any malformed resource, rule or scenario text."""

    def __init__(self, msg: str, line: int = 0) -> None:
        super().__init__(msg)
        self.line = line


class UnknownFallbackError(ParseError):
    def __init__(self, rule_name: str, target: str, line: int = 0) -> None:
        super().__init__(f"{rule_name}: unknown onfail rule: {target!r}", line)
        self.rule_name = rule_name
        self.target = target


class FallbackCycleError(ParseError):
    def __init__(self, rule_name: str, chain: List[str], line: int = 0) -> None:
        super().__init__(f"{rule_name}: onfail rules form a cycle: {' -> '.join(chain)}", line)
        self.rule_name = rule_name
        self.chain = chain


class EvaluationError(ValueError):
    """Raised when a rule cannot be evaluated against the given context."""


# -----------------------------
# Resources
# -----------------------------

@dataclass(frozen=True)
class Resource:
    id: int
    key: str = field(compare=False)
    singular: str = field(compare=False, default="")
    plural: str = field(compare=False, default="")

    def __str__(self) -> str:
        return self.singular


def new_resource(name: str, singular: Optional[str] = None, plural: Optional[str] = None) -> Resource:
    key = name.strip()
    return Resource(
        id=next(_handles),
        key=key,
        singular=singular.strip() if singular else key,
        plural=plural.strip() if plural else key,
    )


class ResourceCatalog:
    """Ordered set of resources with case-insensitive lookup."""

    def __init__(self, resources: Iterable[Resource] = ()) -> None:
        self.resources: List[Resource] = []
        self._by_name: Dict[str, Resource] = {}
        self._by_key: Dict[str, Resource] = {}
        self._by_id: Dict[int, Resource] = {}
        for r in resources:
            self.add(r)

    def add(self, r: Resource) -> Resource:
        """Add r; raises ValueError if its singular name or key is already taken."""
        for n in {r.singular.lower(), r.key.lower()}:
            other = self._by_name.get(n) or self._by_key.get(n)
            if other is not None and other != r:
                raise ValueError(f"duplicate resource name {n!r} ({other.key} and {r.key})")
        if r.id in self._by_id:
            return r
        self.resources.append(r)
        self._by_name[r.singular.lower()] = r
        self._by_key[r.key.lower()] = r
        self._by_id[r.id] = r
        return r

    def find(self, name: str) -> Optional[Resource]:
        n = name.strip().lower()
        r = self._by_name.get(n)
        if r is None:
            r = self._by_key.get(n)
        return r

    def get(self, rid: int) -> Optional[Resource]:
        return self._by_id.get(rid)

    def __iter__(self) -> Iterator[Resource]:
        return iter(self.resources)

    def __len__(self) -> int:
        return len(self.resources)


# -----------------------------
# Pools
# -----------------------------

@dataclass
class Pool:
    resource: Resource
    quantity: int = 0
    capacity: int = 0


def _settle(pool: Pool) -> int:
    # clamp into [0, capacity], returning what was clamped off
    if pool.quantity > pool.capacity:
        excess = pool.quantity - pool.capacity
        pool.quantity = pool.capacity
        return excess
    if pool.quantity < 0:
        excess = pool.quantity
        pool.quantity = 0
        return excess
    return 0


class PoolSet:
    """The holdings of one scope: at most one pool per resource.

    Reads of a resource with no pool see quantity 0 and capacity 0. Writes
    to such a resource change nothing and hand the whole quantity back.
    """

    def __init__(self) -> None:
        self.pools: Dict[Resource, Pool] = {}

    def __contains__(self, r: object) -> bool:
        return r in self.pools

    def __iter__(self) -> Iterator[Pool]:
        return iter(self.pools.values())

    def __len__(self) -> int:
        return len(self.pools)

    def get(self, r: Optional[Resource]) -> Optional[Pool]:
        if r is None:
            return None
        return self.pools.get(r)

    def quantity(self, r: Optional[Resource]) -> int:
        pool = self.get(r)
        return pool.quantity if pool is not None else 0

    def capacity(self, r: Optional[Resource]) -> int:
        pool = self.get(r)
        return pool.capacity if pool is not None else 0

    def set_capacity(self, r: Resource, c: int) -> None:
        # an existing quantity above c is left alone until the next add/set
        pool = self.pools.get(r)
        if pool is None:
            self.pools[r] = Pool(resource=r, capacity=c)
            return
        pool.capacity = c

    def add_pool(self, r: Resource, capacity: int, quantity: int) -> None:
        if r is None:
            raise ValueError("nil resource supplied")
        self.pools[r] = Pool(resource=r, capacity=capacity, quantity=quantity)

    def add(self, r: Optional[Resource], q: int) -> int:
        """Add q of r, returning the amount that did not fit."""
        pool = self.get(r)
        if pool is None:
            return q
        pool.quantity += q
        return _settle(pool)

    def set(self, r: Optional[Resource], q: int) -> int:
        """Set the quantity of r to q, returning the amount that did not fit."""
        pool = self.get(r)
        if pool is None:
            return q
        pool.quantity = q
        return _settle(pool)

    def remove(self, r: Optional[Resource], q: int) -> int:
        """Remove all of q or nothing; returns 0 on success and q on failure."""
        pool = self.get(r)
        if pool is None:
            return q
        if pool.quantity < q:
            return q
        pool.quantity -= q
        return 0


RuleContext = Dict[str, PoolSet]


# -----------------------------
# Rules
# -----------------------------

@dataclass(frozen=True)
class ResourceSpecifier:
    relation: str
    resource: Resource
    quantity: int


@dataclass(frozen=True)
class ResourceCondition(ResourceSpecifier):
    op: int = OP_EQ


@dataclass(frozen=True)
class ResourceSource:
    relation: str
    resource: Resource


@dataclass(frozen=True)
class Rule:
    name: str
    period: int = 1                     # ticks between firings, 0 = only as a fallback
    preconditions: Tuple[ResourceCondition, ...] = ()
    inputs: Tuple[ResourceSpecifier, ...] = ()
    outputs: Tuple[ResourceSpecifier, ...] = ()
    sets: Tuple[ResourceSpecifier, ...] = ()
    repeat: int = 0                     # extra rounds after the first
    repeat_from: Optional[ResourceSource] = None
    on_fail: Optional["Rule"] = None    # only tried when the first round fails
    id: int = field(default_factory=lambda: next(_handles), compare=False, repr=False)


# -----------------------------
# Line scanner
# -----------------------------

@dataclass
class Directive:
    name: str
    arg_text: str
    args: List[str]
    line: int


@dataclass
class DslObject:
    type: str
    name: str
    line: int
    directives: List[Directive] = field(default_factory=list)


class LineScanner:
    """Splits DSL text into ``<type> <name> ... end`` objects."""

    def __init__(self, src: Source) -> None:
        if isinstance(src, str):
            src = src.splitlines()
        self.lines = src

    def objects(self) -> Iterator[DslObject]:
        obj: Optional[DslObject] = None
        for n, raw in enumerate(self.lines, start=1):
            text = raw.strip()
            if not text or text.startswith("#"):
                continue

            parts = text.split(None, 1)
            word = parts[0]
            rest = parts[1].strip() if len(parts) > 1 else ""

            if obj is None:
                if word == "end":
                    raise ParseError(f"unexpected 'end' at line {n} (no open block)", n)
                obj = DslObject(type=word, name=rest, line=n)
                continue

            if word == "end":
                if rest:
                    raise ParseError(f"unexpected text after 'end' at line {n}: {rest}", n)
                yield obj
                obj = None
                continue

            obj.directives.append(Directive(name=word, arg_text=rest, args=rest.split(), line=n))

        if obj is not None:
            raise ParseError(f"unterminated {obj.type} {obj.name!r} starting at line {obj.line}", obj.line)


# -----------------------------
# DSL helpers
# -----------------------------

def parse_op(s: str) -> int:
    if s == "=":
        return OP_EQ
    if s == ">":
        return OP_GT
    if s == "<":
        return OP_LT
    if s == ">=":
        return OP_GE
    if s == "<=":
        return OP_LE
    return OP_UNKNOWN


def _to_int(s: str, what: str, line: int) -> int:
    try:
        return int(s, 10)
    except ValueError:
        raise ParseError(f"invalid {what} at line {line}: {s!r}", line) from None


def _to_count(s: str, what: str, line: int) -> int:
    v = _to_int(s, what, line)
    if v < 0:
        raise ParseError(f"invalid {what} at line {line}: {s!r} is negative", line)
    return v


def _lookup(catalog: ResourceCatalog, name: str, line: int) -> Resource:
    res = catalog.find(name)
    if res is None:
        raise ParseError(f"unknown resource at line {line}: {name.lower()!r}", line)
    return res


def _split_relation(args: List[str], plain: int) -> Tuple[str, List[str]]:
    # an optional leading relation word makes the directive one argument longer
    if len(args) == plain + 1:
        return args[0].lower(), args[1:]
    return RELATION_SELF, args


# -----------------------------
# Resource parser
# -----------------------------

def parse_resources(src: Source) -> List[Resource]:
    seen = ResourceCatalog()
    for obj in LineScanner(src).objects():
        if obj.type != "resource":
            raise ParseError(f"unexpected token at line {obj.line} (expecting a resource to be started)", obj.line)
        if not obj.name:
            raise ParseError(f"missing resource name at line {obj.line}", obj.line)

        singular = plural = obj.name
        for d in obj.directives:
            if d.name not in ("singular", "plural"):
                raise ParseError(f"unknown directive at line {d.line}: {d.name}", d.line)
            if not d.arg_text:
                raise ParseError(f"missing text for {d.name} at line {d.line}", d.line)
            if d.name == "singular":
                singular = d.arg_text
            else:
                plural = d.arg_text

        try:
            seen.add(new_resource(obj.name, singular, plural))
        except ValueError as e:
            raise ParseError(f"{e} at line {obj.line}", obj.line) from None
    return list(seen)


def parse_resource_file(path: str) -> List[Resource]:
    with open(path, "r", encoding="utf-8") as f:
        return parse_resources(f)


# -----------------------------
# Rule parser
# -----------------------------

@dataclass
class _RuleDraft:
    name: str
    line: int
    period: int = 1
    preconditions: List[ResourceCondition] = field(default_factory=list)
    inputs: List[ResourceSpecifier] = field(default_factory=list)
    outputs: List[ResourceSpecifier] = field(default_factory=list)
    sets: List[ResourceSpecifier] = field(default_factory=list)
    repeat: int = 0
    repeat_from: Optional[ResourceSource] = None
    on_fail: str = ""
    on_fail_line: int = 0


def _rule_directive(d: _RuleDraft, dr: Directive, catalog: ResourceCatalog) -> None:
    args = dr.args
    line = dr.line

    if dr.name in ("in", "out", "set"):
        if len(args) not in (2, 3):
            raise ParseError(f"malformed resource specifier at line {line}: {dr.name} {dr.arg_text}", line)
        relation, args = _split_relation(args, 2)
        rs = ResourceSpecifier(
            relation=relation,
            resource=_lookup(catalog, args[0], line),
            quantity=_to_int(args[1], "quantity", line),
        )
        if dr.name == "in":
            d.inputs.append(rs)
        elif dr.name == "out":
            d.outputs.append(rs)
        else:
            d.sets.append(rs)

    elif dr.name == "if":
        if len(args) not in (3, 4):
            raise ParseError(f"malformed resource condition at line {line}: {dr.name} {dr.arg_text}", line)
        relation, args = _split_relation(args, 3)
        res = _lookup(catalog, args[0], line)
        op = parse_op(args[1])
        if op == OP_UNKNOWN:
            raise ParseError(f"unknown operator at line {line}: {args[1]}", line)
        d.preconditions.append(ResourceCondition(
            relation=relation,
            resource=res,
            quantity=_to_int(args[2], "quantity", line),
            op=op,
        ))

    elif dr.name == "every":
        if len(args) != 1:
            raise ParseError(f"malformed every directive at line {line}: {dr.name} {dr.arg_text}", line)
        d.period = _to_count(args[0], "period", line)

    elif dr.name == "repeat":
        if not args or len(args) > 3:
            raise ParseError(f"malformed repeat directive at line {line}: {dr.name} {dr.arg_text}", line)
        if len(args) == 1:
            d.repeat = _to_count(args[0], "repeat", line)
        elif args[0] == "using":
            relation, rest = _split_relation(args[1:], 1)
            d.repeat_from = ResourceSource(relation=relation, resource=_lookup(catalog, rest[0], line))
        else:
            raise ParseError(f"malformed repeat at line {line}: {dr.name} {dr.arg_text}", line)

    elif dr.name == "onfail":
        if len(args) != 1:
            raise ParseError(f"malformed onfail directive at line {line}: {dr.name} {dr.arg_text}", line)
        d.on_fail = args[0]
        d.on_fail_line = line

    else:
        raise ParseError(f"unknown directive at line {line}: {dr.name}", line)


def _link_rules(drafts: List[_RuleDraft]) -> List[Rule]:
    index = {d.name: d for d in drafts}
    built: Dict[str, Rule] = {}

    def build(d: _RuleDraft, chain: List[str]) -> Rule:
        if d.name in built:
            return built[d.name]
        on_fail = None
        if d.on_fail:
            target = index.get(d.on_fail)
            if target is None:
                raise UnknownFallbackError(d.name, d.on_fail, d.on_fail_line)
            if target.name == d.name or target.name in chain:
                raise FallbackCycleError(d.name, chain + [d.name, target.name], d.on_fail_line)
            on_fail = build(target, chain + [d.name])
        rule = Rule(
            name=d.name,
            period=d.period,
            preconditions=tuple(d.preconditions),
            inputs=tuple(d.inputs),
            outputs=tuple(d.outputs),
            sets=tuple(d.sets),
            repeat=d.repeat,
            repeat_from=d.repeat_from,
            on_fail=on_fail,
        )
        built[d.name] = rule
        return rule

    return [build(d, []) for d in drafts]


def parse_rules(src: Source, catalog: Union[ResourceCatalog, Iterable[Resource]]) -> List[Rule]:
    """Parse rule blocks, resolving onfail names once the whole text is read."""
    if not isinstance(catalog, ResourceCatalog):
        catalog = ResourceCatalog(catalog)

    drafts: List[_RuleDraft] = []
    seen = set()
    for obj in LineScanner(src).objects():
        if obj.type != "rule":
            raise ParseError(f"unexpected token at line {obj.line} (expecting a rule to be started)", obj.line)
        if not obj.name:
            raise ParseError(f"missing rule name at line {obj.line}", obj.line)
        if obj.name in seen:
            raise ParseError(f"duplicate rule at line {obj.line}: {obj.name!r}", obj.line)

        d = _RuleDraft(name=obj.name, line=obj.line)
        for dr in obj.directives:
            _rule_directive(d, dr, catalog)
        drafts.append(d)
        seen.add(d.name)

    return _link_rules(drafts)


def parse_rule_file(path: str, catalog: Union[ResourceCatalog, Iterable[Resource]]) -> List[Rule]:
    with open(path, "r", encoding="utf-8") as f:
        return parse_rules(f, catalog)


# -----------------------------
# Runner
# -----------------------------

@dataclass
class RuleState:
    last_run: Optional[int] = None   # None until the rule is first evaluated


class Runner:
    """Evaluates rules tick by tick, remembering when each rule last ran."""

    def __init__(self) -> None:
        self._states: Dict[int, RuleState] = {}

    def run(self, rules: Iterable[Rule], tick: int, ctx: RuleContext) -> None:
        """Run every scheduled rule in order; the first EvaluationError aborts the batch."""
        for rule in rules:
            if rule.period == 0:
                continue
            self.run_rule(rule, tick, ctx)

    def run_rule(self, rule: Rule, tick: int, ctx: RuleContext) -> int:
        """Evaluate one rule if it is due, returning the number of rounds applied."""
        state = self._states.setdefault(rule.id, RuleState())
        if state.last_run is not None and state.last_run + rule.period > tick:
            return 0
        try:
            return self._evaluate(rule, tick, ctx)
        finally:
            state.last_run = tick

    def _evaluate(self, rule: Rule, tick: int, ctx: RuleContext) -> int:
        if rule.repeat_from is not None:
            src = rule.repeat_from
            pools = ctx.get(src.relation)
            if pools is None:
                log.debug("rule %r skipped: no repeat pool set for relation %r", rule.name, src.relation)
                return 0
            rounds = pools.quantity(src.resource)
            log.debug("rule %r rounds: %d", rule.name, rounds)
        else:
            rounds = rule.repeat + 1

        applied = 0
        while rounds > 0:
            if not self._can_run(rule, ctx):
                if applied == 0 and rule.on_fail is not None:
                    log.debug("rule %r failed, trying %r", rule.name, rule.on_fail.name)
                    return self.run_rule(rule.on_fail, tick, ctx)
                break
            if not self._apply(rule, ctx):
                break
            applied += 1
            rounds -= 1
        return applied

    def _apply(self, rule: Rule, ctx: RuleContext) -> bool:
        outputs = [(self._pools(rule, ctx, s.relation, "output"), s) for s in rule.outputs]
        sets = [(self._pools(rule, ctx, s.relation, "set"), s) for s in rule.sets]

        taken: List[Tuple[PoolSet, ResourceSpecifier]] = []
        for rs in rule.inputs:
            pools = self._pools(rule, ctx, rs.relation, "input")
            if pools.remove(rs.resource, rs.quantity) > 0:
                log.warning("rule %r: not enough %s left in %s pools, round abandoned",
                            rule.name, rs.resource, rs.relation)
                # put back without clamping so a lowered capacity stays lazy
                for p, s in reversed(taken):
                    pool = p.get(s.resource)
                    if pool is not None:
                        pool.quantity += s.quantity
                return False
            taken.append((pools, rs))

        # anything that does not fit is lost
        for pools, rs in outputs:
            pools.add(rs.resource, rs.quantity)
        for pools, rs in sets:
            pools.set(rs.resource, rs.quantity)
        return True

    def _can_run(self, rule: Rule, ctx: RuleContext) -> bool:
        for c in rule.preconditions:
            pools = self._pools(rule, ctx, c.relation, "precondition")
            have = pools.quantity(c.resource)
            if not self._holds(rule, c, have):
                log.debug("rule %r: cannot run for resource %s, %d not %s %d",
                          rule.name, c.resource, have, OP_SYMBOLS[c.op], c.quantity)
                return False

        for rs in rule.inputs:
            pools = self._pools(rule, ctx, rs.relation, "input")
            have = pools.quantity(rs.resource)
            if rs.quantity > have:
                log.debug("rule %r: not enough of resource %s, got %d wanted %d",
                          rule.name, rs.resource, have, rs.quantity)
                return False

        return True

    @staticmethod
    def _holds(rule: Rule, c: ResourceCondition, have: int) -> bool:
        if c.op == OP_EQ:
            return have == c.quantity
        if c.op == OP_GT:
            return have > c.quantity
        if c.op == OP_GE:
            return have >= c.quantity
        if c.op == OP_LT:
            return have < c.quantity
        if c.op == OP_LE:
            return have <= c.quantity
        raise EvaluationError(f"rule {rule.name!r} failed: unknown operation {c.op}")

    @staticmethod
    def _pools(rule: Rule, ctx: RuleContext, relation: str, what: str) -> PoolSet:
        pools = ctx.get(relation)
        if pools is None:
            raise EvaluationError(f"rule {rule.name!r} failed: no {what} pool set for relation {relation!r}")
        return pools


# -----------------------------
# Agents
# -----------------------------

class Agent:
    """Something that holds resources and runs rules: a person, a building, a town."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.pools = PoolSet()
        self.rules: List[Rule] = []
        self.relations: Dict[str, Agent] = {}

    def append_rules(self, rules: Iterable[Rule]) -> None:
        self.rules.extend(rules)

    def prepend_rules(self, rules: Iterable[Rule]) -> None:
        self.rules[:0] = list(rules)

    def set_capacity(self, r: Resource, c: int) -> None:
        self.pools.set_capacity(r, c)

    def add_pool(self, r: Resource, capacity: int, quantity: int) -> None:
        self.pools.add_pool(r, capacity, quantity)

    def add_relation(self, relation: str, other: Agent) -> None:
        self.relations[relation] = other

    def rule_context(self, global_pools: Optional[PoolSet] = None) -> RuleContext:
        ctx: RuleContext = {RELATION_SELF: self.pools}
        if global_pools is not None:
            ctx[RELATION_GLOBAL] = global_pools
        for relation, other in self.relations.items():
            ctx[relation] = other.pools
        return ctx


class Global:
    def __init__(self, rules: Optional[Iterable[Rule]] = None) -> None:
        self.pools = PoolSet()
        self.rules: List[Rule] = list(rules or [])

    def set_capacity(self, r: Resource, c: int) -> None:
        self.pools.set_capacity(r, c)

    def rule_context(self) -> RuleContext:
        return {RELATION_SELF: self.pools, RELATION_GLOBAL: self.pools}


# -----------------------------
# Scenario (config produced by parsing)
# -----------------------------

@dataclass
class SimConfig:
    ticks: int = 100
    report_every: int = 10
    snapshot_every: int = 0


@dataclass
class Scenario:
    config: SimConfig = field(default_factory=SimConfig)
    world: Global = field(default_factory=Global)
    agents: List[Agent] = field(default_factory=list)


def _pool_directive(pools: PoolSet, dr: Directive, catalog: ResourceCatalog) -> None:
    if len(dr.args) != 3:
        raise ParseError(f"malformed pool directive at line {dr.line}: {dr.name} {dr.arg_text}", dr.line)
    res = _lookup(catalog, dr.args[0], dr.line)
    if dr.args[1].lower() == "unlimited":
        cap = UNLIMITED
    else:
        cap = _to_count(dr.args[1], "capacity", dr.line)
    pools.add_pool(res, cap, _to_int(dr.args[2], "quantity", dr.line))


def _rules_directive(dr: Directive, rule_index: Dict[str, Rule]) -> List[Rule]:
    if not dr.args:
        raise ParseError(f"malformed rules directive at line {dr.line}: rules needs at least one name", dr.line)
    out: List[Rule] = []
    for name in dr.args:
        if name not in rule_index:
            raise ParseError(f"unknown rule at line {dr.line}: {name!r}", dr.line)
        out.append(rule_index[name])
    return out


def parse_scenario(src: Source,
                   catalog: Union[ResourceCatalog, Iterable[Resource]],
                   rules: Iterable[Rule]) -> Scenario:
    if not isinstance(catalog, ResourceCatalog):
        catalog = ResourceCatalog(catalog)
    rule_index = {r.name: r for r in rules}

    sc = Scenario()
    cfg = sc.config
    agents: Dict[str, Agent] = {}
    pending: List[Tuple[Agent, str, str, int]] = []

    for obj in LineScanner(src).objects():
        if obj.type == "world":
            for dr in obj.directives:
                if dr.name in ("ticks", "report_every", "snapshot_every"):
                    if len(dr.args) != 1:
                        raise ParseError(f"malformed {dr.name} directive at line {dr.line}: {dr.arg_text}", dr.line)
                    setattr(cfg, dr.name, _to_count(dr.args[0], dr.name, dr.line))
                elif dr.name == "pool":
                    _pool_directive(sc.world.pools, dr, catalog)
                elif dr.name == "rules":
                    sc.world.rules.extend(_rules_directive(dr, rule_index))
                else:
                    raise ParseError(f"unknown directive at line {dr.line}: {dr.name}", dr.line)

        elif obj.type == "agent":
            if not obj.name:
                raise ParseError(f"missing agent name at line {obj.line}", obj.line)
            if obj.name in agents:
                raise ParseError(f"duplicate agent at line {obj.line}: {obj.name!r}", obj.line)
            a = Agent(obj.name)
            for dr in obj.directives:
                if dr.name == "pool":
                    _pool_directive(a.pools, dr, catalog)
                elif dr.name == "rules":
                    a.append_rules(_rules_directive(dr, rule_index))
                elif dr.name == "relation":
                    if len(dr.args) != 2:
                        raise ParseError(f"malformed relation directive at line {dr.line}: {dr.arg_text}", dr.line)
                    pending.append((a, dr.args[0].lower(), dr.args[1], dr.line))
                else:
                    raise ParseError(f"unknown directive at line {dr.line}: {dr.name}", dr.line)
            agents[a.name] = a
            sc.agents.append(a)

        else:
            raise ParseError(f"unexpected token at line {obj.line} (expecting a world or agent block)", obj.line)

    # relations may point forward to agents declared later in the file
    for a, relation, target, line in pending:
        other = agents.get(target)
        if other is None:
            raise ParseError(f"unknown agent at line {line}: {target!r}", line)
        a.add_relation(relation, other)

    return sc


def parse_scenario_file(path: str,
                        catalog: Union[ResourceCatalog, Iterable[Resource]],
                        rules: Iterable[Rule]) -> Scenario:
    with open(path, "r", encoding="utf-8") as f:
        return parse_scenario(f, catalog, rules)


# -----------------------------
# Simulation
# -----------------------------

@dataclass
class Sim:
    config: SimConfig
    world: Global
    agents: List[Agent]
    tick: int = 0
    world_runner: Runner = field(default_factory=Runner)
    runners: Dict[str, Runner] = field(default_factory=dict)


def sim_init(sc: Scenario) -> Sim:
    # one runner per scope so a rule shared by several agents is scheduled per agent
    sim = Sim(config=sc.config, world=sc.world, agents=list(sc.agents))
    for a in sim.agents:
        sim.runners[a.name] = Runner()
    return sim


def _run_batch(runner: Runner, scope: str, rules: List[Rule], tick: int, ctx: RuleContext) -> bool:
    try:
        runner.run(rules, tick, ctx)
    except EvaluationError as e:
        log.error("tick %d: %s rules aborted: %s", tick, scope, e)
        return False
    return True


def sim_step(sim: Sim) -> int:
    """Advance one tick; returns the number of scopes whose batch was aborted."""
    sim.tick += 1
    failed = 0
    if not _run_batch(sim.world_runner, "world", sim.world.rules, sim.tick, sim.world.rule_context()):
        failed += 1
    for a in sim.agents:
        ctx = a.rule_context(sim.world.pools)
        if not _run_batch(sim.runners[a.name], a.name, a.rules, sim.tick, ctx):
            failed += 1
    return failed


def _holdings(pools: PoolSet) -> Dict[str, int]:
    return {p.resource.key: p.quantity for p in pools}


def sim_report(sim: Sim) -> None:
    def line(scope: str, pools: PoolSet) -> str:
        items = " ".join(f"{k}={v}" for k, v in _holdings(pools).items())
        return f"  {scope}: {items}\n" if items else f"  {scope}: -\n"

    sys.stdout.write(f"Tick {sim.tick} agents={len(sim.agents)}\n")
    sys.stdout.write(line("world", sim.world.pools))
    for a in sim.agents:
        sys.stdout.write(line(a.name, a.pools))


def sim_write_snapshot_json(sim: Sim, path: str) -> None:
    data = {
        "tick": sim.tick,
        "world": _holdings(sim.world.pools),
        "agents": {a.name: _holdings(a.pools) for a in sim.agents},
    }
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


# -----------------------------
# Command line
# -----------------------------

def setup_logging(verbose: bool = False) -> logging.Logger:
    log.setLevel(logging.DEBUG if verbose else logging.INFO)
    # Prevent duplicate handlers if called multiple times
    if not log.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(name)s - %(levelname)s - %(message)s"))
        log.addHandler(handler)
    return log


def main(argv: List[str]) -> int:
    prog = os.path.basename(argv[0]) if argv else "rulesim"
    usage = f"Usage: {prog} <resources> <rules> <scenario> [-v]\n"
    args = argv[1:]
    if any(a in ("-h", "--help") for a in args):
        sys.stdout.write(usage)
        return 0

    verbose = any(a in ("-v", "--verbose") for a in args)
    paths = [a for a in args if a not in ("-v", "--verbose")]
    if len(paths) != 3:
        sys.stderr.write(usage)
        return 2

    setup_logging(verbose)

    try:
        catalog = ResourceCatalog(parse_resource_file(paths[0]))
        rules = parse_rule_file(paths[1], catalog)
        sc = parse_scenario_file(paths[2], catalog, rules)
    except ParseError as e:
        sys.stderr.write(f"Error: {e}\n")
        return 1

    sim = sim_init(sc)
    cfg = sim.config
    log.info("loaded %d resources, %d rules, %d agents", len(catalog), len(rules), len(sim.agents))

    for _ in range(cfg.ticks):
        sim_step(sim)
        if cfg.report_every > 0 and (sim.tick % cfg.report_every) == 0:
            sim_report(sim)

        if cfg.snapshot_every > 0 and (sim.tick % cfg.snapshot_every) == 0:
            fn = f"snapshot_tick{sim.tick:05d}.json"
            sim_write_snapshot_json(sim, fn)

    sim_report(sim)
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv))
