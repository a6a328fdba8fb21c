import json
import logging
from pathlib import Path

import pytest

from rulesim import (
    Agent,
    Global,
    ParseError,
    RELATION_GLOBAL,
    RELATION_LOCATION,
    RELATION_SELF,
    ResourceCatalog,
    UNLIMITED,
    main,
    new_resource,
    parse_resources,
    parse_rules,
    parse_scenario,
    sim_init,
    sim_report,
    sim_step,
    sim_write_snapshot_json,
)

SAMPLES = Path(__file__).resolve().parents[1] / "samples"

RESOURCES = """
resource grain
end
resource copper
end
resource bronze
end
"""

RULES = """
rule farm
	out grain 2
end
rule smelt
	every 2
	in location copper 2
	out bronze 1
end
rule tax
	in grain 1
	out global grain 1
end
rule decay
	every 5
	set grain 0
end
"""


@pytest.fixture
def world():
    catalog = ResourceCatalog(parse_resources(RESOURCES))
    rules = parse_rules(RULES, catalog)
    return catalog, rules


def test_agent_rule_context():
    a = Agent("smith")
    mine = Agent("mine")
    a.add_relation(RELATION_LOCATION, mine)
    shared = Global()
    ctx = a.rule_context(shared.pools)
    assert ctx[RELATION_SELF] is a.pools
    assert ctx[RELATION_GLOBAL] is shared.pools
    assert ctx[RELATION_LOCATION] is mine.pools
    assert RELATION_GLOBAL not in a.rule_context()


def test_global_context_binds_self_and_global():
    g = Global()
    ctx = g.rule_context()
    assert ctx[RELATION_SELF] is g.pools
    assert ctx[RELATION_GLOBAL] is g.pools


def test_agent_rules_and_pools(world):
    catalog, rules = world
    farm, smelt, tax, decay = rules
    a = Agent("village")
    a.append_rules([smelt, tax])
    a.prepend_rules([farm])
    assert a.rules == [farm, smelt, tax]
    grain = catalog.find("grain")
    a.set_capacity(grain, 5)
    assert a.pools.capacity(grain) == 5
    a.add_pool(grain, 10, 3)
    assert a.pools.quantity(grain) == 3


def test_parse_scenario(world):
    catalog, rules = world
    src = """
world
	ticks 12
	report_every 4
	snapshot_every 6
	pool grain unlimited 0
	rules decay
end
agent village
	pool grain 100 0
	pool bronze 10 0
	rules farm tax smelt
	relation location mine
end
agent mine
	pool copper 50 9
end
"""
    sc = parse_scenario(src, catalog, rules)
    assert (sc.config.ticks, sc.config.report_every, sc.config.snapshot_every) == (12, 4, 6)
    assert [r.name for r in sc.world.rules] == ["decay"]
    assert sc.world.pools.capacity(catalog.find("grain")) == UNLIMITED
    village, mine = sc.agents
    assert [r.name for r in village.rules] == ["farm", "tax", "smelt"]
    assert village.relations[RELATION_LOCATION] is mine
    assert mine.pools.quantity(catalog.find("copper")) == 9


@pytest.mark.parametrize("src, fragment", [
    ("agent a\n\trules nothing\nend\n", "unknown rule"),
    ("agent a\n\trelation location nowhere\nend\n", "unknown agent"),
    ("agent a\n\tpool tin 1 1\nend\n", "unknown resource"),
    ("agent a\n\tpool grain 1\nend\n", "malformed pool"),
    ("agent a\nend\nagent a\nend\n", "duplicate agent"),
    ("world\n\tticks soon\nend\n", "invalid ticks"),
    ("world\n\tspeed 3\nend\n", "unknown directive"),
    ("planet earth\nend\n", "expecting a world or agent"),
])
def test_scenario_errors(world, src, fragment):
    catalog, rules = world
    with pytest.raises(ParseError) as ei:
        parse_scenario(src, catalog, rules)
    assert fragment in str(ei.value)


def test_sim_step(world):
    catalog, rules = world
    src = """
world
	pool grain unlimited 0
end
agent village
	pool grain 100 0
	pool bronze 10 0
	rules farm tax smelt
	relation location mine
end
agent mine
	pool copper 50 3
end
"""
    sim = sim_init(parse_scenario(src, catalog, rules))
    grain, copper, bronze = catalog.find("grain"), catalog.find("copper"), catalog.find("bronze")
    village, mine = sim.agents
    for _ in range(4):
        assert sim_step(sim) == 0
    assert sim.tick == 4
    assert village.pools.quantity(grain) == 4
    assert sim.world.pools.quantity(grain) == 4
    # smelt runs on ticks 1 and 3 but only has copper for one round
    assert village.pools.quantity(bronze) == 1
    assert mine.pools.quantity(copper) == 1


def test_shared_rules_are_scheduled_per_agent(world):
    catalog, rules = world
    src = """
agent a
	pool bronze 10 0
	rules smelt
	relation location mine
end
agent b
	pool bronze 10 0
	rules smelt
	relation location mine
end
agent mine
	pool copper 50 50
end
"""
    sim = sim_init(parse_scenario(src, catalog, rules))
    sim_step(sim)
    bronze = catalog.find("bronze")
    assert [a.pools.quantity(bronze) for a in sim.agents[:2]] == [1, 1]


def test_evaluation_error_skips_batch_not_run(world, caplog):
    catalog, rules = world
    src = """
agent broken
	pool bronze 10 0
	rules smelt
end
agent fine
	pool grain 10 0
	rules farm
end
"""
    sim = sim_init(parse_scenario(src, catalog, rules))
    with caplog.at_level(logging.ERROR, logger="rulesim"):
        assert sim_step(sim) == 1
        assert sim_step(sim) == 0
        assert sim_step(sim) == 1
    assert "broken rules aborted" in caplog.text
    assert sim.agents[1].pools.quantity(catalog.find("grain")) == 6


def test_report_and_snapshot(world, tmp_path, capsys):
    catalog, rules = world
    src = "agent village\n\tpool grain 100 7\nend\nagent empty\nend\n"
    sim = sim_init(parse_scenario(src, catalog, rules))
    sim_report(sim)
    out = capsys.readouterr().out
    assert "Tick 0 agents=2" in out
    assert "  village: grain=7" in out
    assert "  empty: -" in out

    path = tmp_path / "snap.json"
    sim_write_snapshot_json(sim, str(path))
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data == {"tick": 0, "world": {}, "agents": {"village": {"grain": 7}, "empty": {}}}


def test_main_runs_samples(capsys):
    args = ["rulesim", str(SAMPLES / "bronze.resources"), str(SAMPLES / "bronze.rules"),
            str(SAMPLES / "village.scenario")]
    assert main(args) == 0
    out = capsys.readouterr().out
    assert "Tick 20 agents=2" in out
    assert "Tick 120 agents=2" in out
    assert "  hills: copper=" in out


def test_main_writes_snapshots(tmp_path, monkeypatch):
    (tmp_path / "r.res").write_text(RESOURCES, encoding="utf-8")
    (tmp_path / "r.rules").write_text(RULES, encoding="utf-8")
    (tmp_path / "s.sim").write_text(
        "world\n\tticks 10\n\treport_every 0\n\tsnapshot_every 5\nend\n"
        "agent village\n\tpool grain 100 0\n\trules farm\nend\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    assert main(["rulesim", "r.res", "r.rules", "s.sim"]) == 0
    snap = json.loads((tmp_path / "snapshot_tick00010.json").read_text(encoding="utf-8"))
    assert snap["agents"]["village"]["grain"] == 20
    assert (tmp_path / "snapshot_tick00005.json").exists()


def test_main_reports_parse_errors(tmp_path, capsys):
    (tmp_path / "r.res").write_text(RESOURCES, encoding="utf-8")
    (tmp_path / "r.rules").write_text("rule a\n\tin copper\nend\n", encoding="utf-8")
    (tmp_path / "s.sim").write_text("", encoding="utf-8")
    assert main(["rulesim", str(tmp_path / "r.res"), str(tmp_path / "r.rules"), str(tmp_path / "s.sim")]) == 1
    assert "Error: malformed resource specifier at line 2" in capsys.readouterr().err


def test_main_usage(capsys):
    assert main(["rulesim", "--help"]) == 0
    assert "Usage:" in capsys.readouterr().out
    assert main(["rulesim", "only-one"]) == 2
    assert "Usage:" in capsys.readouterr().err


def test_new_resource_names():
    r = new_resource(" ox ", plural="oxen")
    assert (r.key, r.singular, r.plural) == ("ox", "ox", "oxen")
