from __future__ import annotations

import pytest
from conftest import make_rule, prometheus_rule

from src.alerting.errors import ConflictError, NotAllowedError, NotFoundError, StorageError, ValidationError
from src.alerting.schemas.monitoring import PrometheusRule, ResourceRef, Rule
from src.alerting.services.identity import RULE_ID_ANNOTATION, compute_rule_id
from src.alerting.services.rule_mutator import diff_labels_to_directives, relabel_config_name

USER_REF = ResourceRef(namespace="team-a", name="team-a-rules")
PLATFORM_REF = ResourceRef(namespace="openshift-monitoring", name="openshift-cluster-rules")

PR = "prometheusrules"
ARC = "alertrelabelconfigs"


def _stored_rules(kube, ref: ResourceRef):
    obj = kube.get_object(PR, ref.namespace, ref.name)
    return None if obj is None else PrometheusRule.from_k8s(obj)


def _seed_platform_rule(kube, rule: Rule) -> str:
    kube.put_object(prometheus_rule(PLATFORM_REF.namespace, PLATFORM_REF.name, {"cluster": [rule]}))
    return compute_rule_id(rule)


@pytest.mark.anyio
async def test_create_into_missing_resource_creates_it_with_the_rule(kube, mutator):
    rule = make_rule()
    rule_id = await mutator.create_user_defined_alert_rule(rule, USER_REF)

    assert rule_id == compute_rule_id(rule)
    pr = _stored_rules(kube, USER_REF)
    assert [g.name for g in pr.groups] == ["user-defined-rules"]
    stored = pr.groups[0].rules[0]
    assert stored.alert == "HighErrorRate"
    assert stored.annotations[RULE_ID_ANNOTATION] == rule_id
    assert [m for m, _ in kube.writes()] == ["POST"]


@pytest.mark.anyio
async def test_create_appends_to_existing_group_or_adds_group(kube, mutator):
    kube.put_object(prometheus_rule("team-a", "team-a-rules", {"api": [make_rule(alert="Existing")]}))

    await mutator.create_user_defined_alert_rule(make_rule(alert="SameGroup"), USER_REF, "api")
    await mutator.create_user_defined_alert_rule(make_rule(alert="NewGroup"), USER_REF, "db")

    pr = _stored_rules(kube, USER_REF)
    assert [(g.name, [r.alert for r in g.rules]) for g in pr.groups] == [
        ("api", ["Existing", "SameGroup"]),
        ("db", ["NewGroup"]),
    ]


@pytest.mark.anyio
async def test_create_then_lookup_after_watch_catches_up(kube, state, mutator):
    kube.auto_sync = False
    rule_id = await mutator.create_user_defined_alert_rule(make_rule(), USER_REF)

    with pytest.raises(NotFoundError):
        state.rule_index.lookup(rule_id)

    kube.flush()
    assert state.rule_index.lookup(rule_id) == USER_REF


@pytest.mark.anyio
async def test_create_duplicate_content_conflicts_without_writing(kube, mutator):
    await mutator.create_user_defined_alert_rule(make_rule(), USER_REF)
    writes = len(kube.writes())

    other = ResourceRef(namespace="team-b", name="rules")
    with pytest.raises(ConflictError, match="already exists"):
        await mutator.create_user_defined_alert_rule(make_rule(), other)
    assert len(kube.writes()) == writes


@pytest.mark.anyio
@pytest.mark.parametrize("ref", [ResourceRef(namespace="", name="x"), ResourceRef(namespace="ns", name="")])
async def test_create_requires_target_location(kube, mutator, ref):
    with pytest.raises(ValidationError, match="Name and Namespace"):
        await mutator.create_user_defined_alert_rule(make_rule(), ref)
    assert kube.calls == []


@pytest.mark.anyio
async def test_create_into_platform_resource_is_not_allowed(kube, mutator):
    with pytest.raises(NotAllowedError):
        await mutator.create_user_defined_alert_rule(make_rule(), PLATFORM_REF)
    assert kube.calls == []


@pytest.mark.anyio
async def test_create_wraps_storage_failures(kube, mutator):
    kube.fail_next("POST")
    with pytest.raises(StorageError, match="team-a/team-a-rules"):
        await mutator.create_user_defined_alert_rule(make_rule(), USER_REF)


@pytest.mark.anyio
async def test_delete_removes_rule_and_keeps_siblings(kube, mutator):
    keep = make_rule(alert="Keep")
    drop = make_rule(alert="Drop")
    kube.put_object(prometheus_rule("team-a", "team-a-rules", {"g1": [keep, drop], "g2": [make_rule(alert="Other")]}))

    await mutator.delete_rule_by_id(compute_rule_id(drop))

    pr = _stored_rules(kube, USER_REF)
    assert [(g.name, [r.alert for r in g.rules]) for g in pr.groups] == [("g1", ["Keep"]), ("g2", ["Other"])]


@pytest.mark.anyio
async def test_delete_drops_emptied_group(kube, mutator):
    lone = make_rule(alert="Lone")
    kube.put_object(prometheus_rule("team-a", "team-a-rules", {"g1": [lone], "g2": [make_rule(alert="Other")]}))

    await mutator.delete_rule_by_id(compute_rule_id(lone))

    assert [g.name for g in _stored_rules(kube, USER_REF).groups] == ["g2"]


@pytest.mark.anyio
async def test_delete_last_rule_deletes_resource(kube, state, mutator):
    rule = make_rule()
    kube.put_object(prometheus_rule("team-a", "team-a-rules", {"g1": [rule]}))
    rule_id = compute_rule_id(rule)

    await mutator.delete_rule_by_id(rule_id)

    assert _stored_rules(kube, USER_REF) is None
    assert kube.writes()[-1][0] == "DELETE"
    assert rule_id not in state.rule_index


@pytest.mark.anyio
async def test_delete_removes_every_duplicate_within_the_resource(kube, mutator):
    dup = make_rule()
    kube.put_object(prometheus_rule("team-a", "team-a-rules", {"g1": [dup, make_rule(alert="Keep")], "g2": [dup]}))

    await mutator.delete_rule_by_id(compute_rule_id(dup))

    pr = _stored_rules(kube, USER_REF)
    assert [(g.name, [r.alert for r in g.rules]) for g in pr.groups] == [("g1", ["Keep"])]


@pytest.mark.anyio
async def test_delete_unknown_id_is_not_found(mutator):
    with pytest.raises(NotFoundError):
        await mutator.delete_rule_by_id("f" * 64)


@pytest.mark.anyio
async def test_delete_when_resource_vanished_is_a_noop(kube, mutator):
    rule = make_rule()
    kube.put_object(prometheus_rule("team-a", "team-a-rules", {"g1": [rule]}))
    kube.auto_sync = False
    del kube.objects[(PR, "team-a", "team-a-rules")]

    await mutator.delete_rule_by_id(compute_rule_id(rule))
    assert kube.writes() == []


@pytest.mark.anyio
async def test_delete_when_rule_already_gone_is_a_noop(kube, mutator):
    rule = make_rule()
    kube.put_object(prometheus_rule("team-a", "team-a-rules", {"g1": [rule]}))
    kube.auto_sync = False
    kube.put_object(prometheus_rule("team-a", "team-a-rules", {"g1": [make_rule(alert="Replacement")]}))
    writes = len(kube.writes())

    await mutator.delete_rule_by_id(compute_rule_id(rule))
    assert len(kube.writes()) == writes


@pytest.mark.anyio
async def test_delete_wraps_update_failures(kube, mutator):
    rule = make_rule()
    kube.put_object(prometheus_rule("team-a", "team-a-rules", {"g1": [rule, make_rule(alert="Keep")]}))
    kube.fail_next("PUT")

    with pytest.raises(StorageError, match="failed to update PrometheusRule team-a/team-a-rules"):
        await mutator.delete_rule_by_id(compute_rule_id(rule))


@pytest.mark.anyio
async def test_delete_surfaces_concurrent_modification_as_storage_error(kube, mutator):
    rule = make_rule()
    kube.put_object(prometheus_rule("team-a", "team-a-rules", {"g1": [rule, make_rule(alert="Keep")]}))
    racing = prometheus_rule("team-a", "team-a-rules", {"g1": [rule, make_rule(alert="Keep"), make_rule(alert="Late")]})
    kube.interleave("PUT", lambda: kube.put_object(racing))

    with pytest.raises(StorageError, match="has been modified"):
        await mutator.delete_rule_by_id(compute_rule_id(rule))
    assert [r.alert for r in _stored_rules(kube, USER_REF).groups[0].rules] == ["HighErrorRate", "Keep", "Late"]


@pytest.mark.anyio
async def test_create_into_existing_resource_loses_race_with_storage_error(kube, mutator):
    kube.put_object(prometheus_rule("team-a", "team-a-rules", {"g1": [make_rule(alert="Existing")]}))
    kube.interleave("PUT", lambda: kube.put_object(prometheus_rule("team-a", "team-a-rules", {"g1": []})))

    with pytest.raises(StorageError, match="failed to add rule to PrometheusRule team-a/team-a-rules"):
        await mutator.create_user_defined_alert_rule(make_rule(), USER_REF)
    assert _stored_rules(kube, USER_REF).groups[0].rules == []


@pytest.mark.anyio
async def test_user_defined_delete_refuses_platform_rules(kube, mutator):
    rule_id = _seed_platform_rule(kube, make_rule(alert="Watchdog"))
    writes = len(kube.writes())

    with pytest.raises(NotAllowedError, match="platform-managed"):
        await mutator.delete_user_defined_rule_by_id(rule_id)
    assert len(kube.writes()) == writes


@pytest.mark.anyio
async def test_get_user_rule_returns_stored_content(mutator):
    rule = make_rule()
    rule_id = await mutator.create_user_defined_alert_rule(rule, USER_REF)

    got = await mutator.get_rule_by_id(rule_id)
    assert got.alert == rule.alert
    assert got.labels == rule.labels
    assert compute_rule_id(got) == rule_id


@pytest.mark.anyio
async def test_get_unknown_id_is_not_found(mutator):
    with pytest.raises(NotFoundError):
        await mutator.get_rule_by_id("a" * 64)


@pytest.mark.anyio
async def test_platform_update_writes_overlay_and_get_reflects_it(kube, mutator):
    raw = make_rule(alert="Watchdog", labels={"severity": "none", "namespace": "openshift-monitoring"})
    rule_id = _seed_platform_rule(kube, raw)
    writes = len(kube.writes())

    arc_ref = await mutator.update_platform_alert_rule(
        rule_id, Rule(labels={"severity": "critical", "team": "sre"})
    )

    assert arc_ref == ResourceRef(namespace="openshift-monitoring", name="openshift-cluster-rules-watchdog-relabel")
    configs = kube.get_object(ARC, arc_ref.namespace, arc_ref.name)["spec"]["configs"]
    # a removed label is cleared with an empty Replace, scoped to this alert
    assert {
        "sourceLabels": ["alertname"],
        "regex": "Watchdog",
        "targetLabel": "namespace",
        "replacement": "",
        "action": "Replace",
    } in configs
    # the PrometheusRule itself is never written
    assert all(ARC in path for _, path in kube.writes()[writes:])

    effective = await mutator.get_rule_by_id(rule_id)
    assert effective.labels == {"severity": "critical", "team": "sre"}
    # id stays the id of the raw rule
    assert compute_rule_id(_stored_rules(kube, PLATFORM_REF).groups[0].rules[0]) == rule_id


@pytest.mark.anyio
async def test_platform_update_replaces_overlay_wholesale(kube, mutator):
    rule_id = _seed_platform_rule(kube, make_rule(alert="Watchdog", labels={"severity": "none"}))

    await mutator.update_platform_alert_rule(rule_id, Rule(labels={"severity": "critical"}))
    await mutator.update_platform_alert_rule(rule_id, Rule(labels={"severity": "none", "team": "sre"}))

    arcs = [k for k in kube.objects if k[0] == ARC]
    assert len(arcs) == 1
    assert (await mutator.get_rule_by_id(rule_id)).labels == {"severity": "none", "team": "sre"}


@pytest.mark.anyio
async def test_platform_update_without_label_change_is_rejected(kube, mutator):
    rule_id = _seed_platform_rule(kube, make_rule(alert="Watchdog", labels={"severity": "none"}))
    writes = len(kube.writes())

    with pytest.raises(ValidationError, match="label"):
        await mutator.update_platform_alert_rule(rule_id, Rule(labels={"severity": "none"}))
    assert len(kube.writes()) == writes


@pytest.mark.anyio
async def test_update_of_user_rule_is_not_allowed(mutator):
    rule_id = await mutator.create_user_defined_alert_rule(make_rule(), USER_REF)
    with pytest.raises(NotAllowedError, match="non-platform"):
        await mutator.update_platform_alert_rule(rule_id, Rule(labels={"severity": "critical"}))


@pytest.mark.anyio
async def test_create_from_existing_platform_rule_clones_effective_content(kube, mutator):
    rule_id = _seed_platform_rule(kube, make_rule(alert="Watchdog", labels={"severity": "none"}))
    await mutator.update_platform_alert_rule(rule_id, Rule(labels={"severity": "warning"}))

    clone_id = await mutator.create_from_existing_rule(rule_id, "WatchdogCopy", USER_REF)

    clone = await mutator.get_rule_by_id(clone_id)
    assert clone.alert == "WatchdogCopy"
    assert clone.labels == {"severity": "warning"}
    assert clone_id != rule_id


@pytest.mark.anyio
async def test_create_from_existing_requires_alert_name(kube, mutator):
    rule_id = await mutator.create_user_defined_alert_rule(make_rule(), USER_REF)
    with pytest.raises(ValidationError):
        await mutator.create_from_existing_rule(rule_id, "  ", USER_REF)


@pytest.mark.anyio
async def test_list_rules_filters(kube, mutator):
    kube.put_object(
        prometheus_rule(
            "team-a",
            "team-a-rules",
            {
                "api": [make_rule(alert="ApiDown", labels={"severity": "critical"}), Rule(record="r", expr="up")],
                "db": [make_rule(alert="DbSlow", labels={"severity": "warning"})],
            },
        )
    )
    kube.put_object(prometheus_rule(PLATFORM_REF.namespace, PLATFORM_REF.name, {"c": [make_rule(alert="Watchdog")]}))

    async def names(**filters):
        return sorted(r.alert for r in await mutator.list_rules(**filters))

    assert await names() == ["ApiDown", "DbSlow", "Watchdog"]
    assert await names(namespace="team-a") == ["ApiDown", "DbSlow"]
    assert await names(namespace="team-a", name="team-a-rules", group_name="db") == ["DbSlow"]
    assert await names(alert_name="Watchdog") == ["Watchdog"]
    assert await names(labels={"severity": "critical"}) == ["ApiDown"]
    assert await names(source="platform") == ["Watchdog"]
    assert await names(source="user-defined") == ["ApiDown", "DbSlow"]


@pytest.mark.anyio
async def test_list_rules_validation(mutator):
    with pytest.raises(ValidationError, match="Namespace"):
        await mutator.list_rules(name="team-a-rules")
    with pytest.raises(ValidationError, match="source"):
        await mutator.list_rules(source="everything")
    with pytest.raises(NotFoundError):
        await mutator.list_rules(namespace="team-a", name="missing")


def test_diff_labels_to_directives():
    directives = diff_labels_to_directives(
        "Watchdog",
        {"severity": "none", "namespace": "openshift-monitoring", "keep": "same"},
        {"severity": "critical", "keep": "same", "team": "sre"},
    )
    assert [(d.action, d.target_label, d.replacement, d.regex, d.source_labels) for d in directives] == [
        ("Replace", "severity", "critical", "Watchdog;.*", ["alertname", "severity"]),
        ("Replace", "team", "sre", "Watchdog;.*", ["alertname", "team"]),
        ("Replace", "namespace", "", "Watchdog", ["alertname"]),
    ]


def test_relabel_config_name_is_dns_safe():
    assert relabel_config_name("openshift-cluster-rules", "KubeAPIDown") == "openshift-cluster-rules-kubeapidown-relabel"
    assert relabel_config_name("rules", "Foo_Bar:Baz") == "rules-foo-bar-baz-relabel"
    assert len(relabel_config_name("r" * 300, "A")) <= 253
