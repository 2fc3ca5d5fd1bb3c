from pathlib import Path

from taskgate.plan import (
    NORMAL_ORDER,
    TDD_ORDER,
    Feature,
    Plan,
    decompose_feature,
    determine_task_order_mode,
    load_plan,
)
from taskgate.state.store import ProjectStore


def _feature(**overrides: object) -> Feature:
    payload = {
        "id": "FEAT-001",
        "name": "Login",
        "priority": "P0",
        "size": "L",
        "type": "proprietary",
    }
    payload.update(overrides)
    return Feature.from_dict(payload)


def test_implementation_first_order_and_ids() -> None:
    tasks = decompose_feature(_feature(), "normal")

    assert [task.kind for task in tasks] == ["db", "api", "ui", "integration", "review", "test"]
    assert [task.id for task in tasks][:2] == ["FEAT-001-DB", "FEAT-001-API"]
    assert tasks[0].name == "Login - Database"
    assert tasks[0].blocked_by == []
    assert tasks[0].blocks == ["FEAT-001-API"]
    assert tasks[-1].blocked_by == ["FEAT-001-REVIEW"]
    assert tasks[-1].blocks == []
    assert all(task.size == "L" for task in tasks)


def test_test_first_order() -> None:
    tasks = decompose_feature(_feature(), "tdd")

    assert [task.kind for task in tasks] == ["test", "db", "api", "ui", "integration", "review"]
    assert tasks[0].references == ["§3-E", "§3-F", "§3-G", "§3-H"]


def test_orderings_are_permutations_of_the_same_kinds() -> None:
    assert sorted(NORMAL_ORDER) == sorted(TDD_ORDER)
    assert len(set(NORMAL_ORDER)) == 6


def test_decomposition_is_deterministic() -> None:
    feature = _feature()

    assert decompose_feature(feature, "tdd") == decompose_feature(feature, "tdd")
    assert decompose_feature(feature, "normal") == decompose_feature(feature, "normal")


def test_order_mode_selection() -> None:
    assert determine_task_order_mode("app", "proprietary") == "normal"
    assert determine_task_order_mode("app", "common") == "tdd"
    assert determine_task_order_mode("api", "proprietary") == "tdd"
    assert determine_task_order_mode("cli", "proprietary") == "tdd"
    assert determine_task_order_mode(None, "proprietary") == "normal"


def test_plan_from_dict_accepts_camel_case() -> None:
    plan = Plan.from_dict(
        {
            "status": "generated",
            "waves": [
                {
                    "number": 1,
                    "features": [
                        {
                            "id": "F1",
                            "name": "One",
                            "dependencyCount": 2,
                            "dependencies": ["F0"],
                            "status": "done",
                        }
                    ],
                }
            ],
            "circularDependencies": [["F1", "F2"]],
        }
    )

    feature = plan.waves[0].features[0]
    assert feature.dependency_count == 2
    assert feature.status == "done"
    assert plan.total_features == 1
    assert plan.circular_dependencies == [["F1", "F2"]]
    assert plan.find_wave(1) is plan.waves[0]
    assert plan.find_wave(2) is None


def test_load_plan_tolerates_missing_and_corrupt(tmp_path: Path) -> None:
    store = ProjectStore(tmp_path)
    assert load_plan(store) is None

    (tmp_path / ".framework").mkdir()
    (tmp_path / ".framework" / "plan.json").write_text("[1, 2", encoding="utf-8")
    assert load_plan(store) is None


def test_load_plan_treats_wrong_shape_as_absent(tmp_path: Path) -> None:
    (tmp_path / ".framework").mkdir()
    (tmp_path / ".framework" / "plan.json").write_text(
        '{"waves": [{"number": 1, "features": ["F1"]}]}', encoding="utf-8"
    )

    assert load_plan(ProjectStore(tmp_path)) is None
