from ec2deploy import AppliedState, IngressRule, ResourceState, plan_changes, plan_destroy
from ec2deploy.declaration import INSTANCE, SECURITY_GROUP
from ec2deploy.planner import REMOVED, REPLACE, Action

from .helpers import make_declaration


def _applied(declaration) -> AppliedState:
    state = AppliedState()
    for address, desired in declaration.desired_resources().items():
        state = state.with_resource(
            address,
            ResourceState(
                kind=desired.kind,
                id=f"{address}-1",
                attributes=desired.attributes,
                depends_on=desired.depends_on,
            ),
        )
    return state


def _steps(plan):
    return [(change.action, change.address) for change in plan]


def test_empty_state_creates_security_group_before_instance():
    plan = plan_changes(make_declaration(), AppliedState())

    assert _steps(plan) == [
        (Action.CREATE, SECURITY_GROUP),
        (Action.CREATE, INSTANCE),
    ]
    assert plan.summary() == {"create": 2, "update": 0, "delete": 0}


def test_matching_state_plans_nothing():
    declaration = make_declaration()

    plan = plan_changes(declaration, _applied(declaration))

    assert plan.is_empty
    assert len(plan) == 0


def test_state_survives_json_round_trip_without_changes():
    declaration = make_declaration()
    state = AppliedState.model_validate_json(_applied(declaration).model_dump_json())

    assert plan_changes(declaration, state).is_empty


def test_instance_type_change_is_an_update():
    state = _applied(make_declaration())

    plan = plan_changes(make_declaration(instance_type="t3.small"), state)

    assert _steps(plan) == [(Action.UPDATE, INSTANCE)]
    assert plan.changes[0].changed == ("instance_type",)


def test_ami_change_replaces_instance():
    state = _applied(make_declaration())

    plan = plan_changes(make_declaration(ami_id="ami-0123456789abcdef0"), state)

    assert _steps(plan) == [(Action.DELETE, INSTANCE), (Action.CREATE, INSTANCE)]
    assert all(change.reason == REPLACE for change in plan)


def test_ingress_change_updates_security_group_in_place():
    state = _applied(make_declaration())
    rules = (IngressRule(from_port=22, to_port=22), IngressRule(from_port=443, to_port=443))

    plan = plan_changes(make_declaration(ingress_rules=rules), state)

    assert _steps(plan) == [(Action.UPDATE, SECURITY_GROUP)]
    assert plan.changes[0].changed == ("ingress",)


def test_replacing_security_group_replaces_dependent_instance():
    state = _applied(make_declaration())
    declaration = make_declaration(vpc_id="vpc-0fedcba9")

    plan = plan_changes(declaration, state)

    assert _steps(plan) == [
        (Action.DELETE, INSTANCE),
        (Action.DELETE, SECURITY_GROUP),
        (Action.CREATE, SECURITY_GROUP),
        (Action.CREATE, INSTANCE),
    ]


def test_missing_dependency_recreates_dependent():
    declaration = make_declaration()
    state = _applied(declaration).without_resource(SECURITY_GROUP)

    plan = plan_changes(declaration, state)

    assert _steps(plan) == [
        (Action.DELETE, INSTANCE),
        (Action.CREATE, SECURITY_GROUP),
        (Action.CREATE, INSTANCE),
    ]


def test_undeclared_resources_are_deleted_first():
    declaration = make_declaration()
    state = _applied(declaration).with_resource(
        "old_instance",
        ResourceState(kind=INSTANCE, id="i-old", attributes={}, depends_on=(SECURITY_GROUP,)),
    )

    plan = plan_changes(declaration, state)

    assert _steps(plan) == [(Action.DELETE, "old_instance")]
    assert plan.changes[0].reason == REMOVED


def test_plan_does_not_modify_state():
    declaration = make_declaration()
    state = _applied(declaration)
    before = state.model_dump()

    plan_changes(make_declaration(instance_type="t3.small"), state)

    assert state.model_dump() == before


def test_destroy_removes_instance_before_security_group():
    plan = plan_destroy(_applied(make_declaration()))

    assert _steps(plan) == [(Action.DELETE, INSTANCE), (Action.DELETE, SECURITY_GROUP)]


def test_destroy_of_empty_state_is_empty():
    assert plan_destroy(AppliedState()).is_empty
