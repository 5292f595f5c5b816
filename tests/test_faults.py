from __future__ import annotations

import pytest

from bftbench.errors import ConfigurationError
from bftbench.faults import (
    CrashRecoveryFaults,
    CrashRecoverySchedule,
    FaultModel,
    PermanentFaults,
)


class TestFaultModel:
    @pytest.mark.parametrize("faults", [4, 5])
    def test_rejects_faults_not_below_nodes(self, faults: int) -> None:
        with pytest.raises(ConfigurationError):
            PermanentFaults(faults).validate(4)

    def test_accepts_tolerable_faults(self) -> None:
        PermanentFaults(3).validate(4)
        CrashRecoveryFaults(1, interval=10).validate(4)

    def test_rejects_negative_faults_and_bad_interval(self) -> None:
        with pytest.raises(ConfigurationError):
            PermanentFaults(-1).validate(4)
        with pytest.raises(ConfigurationError):
            CrashRecoveryFaults(1, interval=0).validate(4)

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("0", PermanentFaults(0)),
            ("permanent:2", PermanentFaults(2)),
            ("crash-recovery:1:30", CrashRecoveryFaults(1, interval=30.0)),
            ("crash-recovery:3:45s", CrashRecoveryFaults(3, interval=45.0)),
        ],
    )
    def test_parse(self, text: str, expected: FaultModel) -> None:
        assert FaultModel.parse(text) == expected

    @pytest.mark.parametrize("text", ["", "many", "permanent", "crash-recovery:1", "random:1"])
    def test_parse_rejects_malformed(self, text: str) -> None:
        with pytest.raises(ConfigurationError):
            FaultModel.parse(text)

    def test_dict_round_trip(self) -> None:
        for model in (PermanentFaults(1), CrashRecoveryFaults(2, interval=15.0)):
            assert FaultModel.from_dict(model.to_dict()) == model

    def test_base_model_is_abstract(self) -> None:
        with pytest.raises(TypeError):
            FaultModel(1)

    def test_display(self) -> None:
        assert str(PermanentFaults(1)) == "1 crashed"
        assert str(CrashRecoveryFaults(1, interval=60)) == "1 crash-recovery, 60s"


class TestCrashRecoverySchedule:
    def test_permanent_faults_are_noops(self) -> None:
        schedule = CrashRecoverySchedule(PermanentFaults(1), ["a", "b", "c", "d"])
        assert schedule.update().is_noop()

    def test_single_fault_alternates_kill_and_boot(self) -> None:
        schedule = CrashRecoverySchedule(CrashRecoveryFaults(1, interval=1), ["a", "b", "c", "d"])
        assert schedule.update().kill == ("d",)
        assert schedule.update().boot == ("d",)
        assert schedule.update().kill == ("d",)

    def test_kills_in_steps_then_boots_all(self) -> None:
        nodes = [f"n{i}" for i in range(10)]
        schedule = CrashRecoverySchedule(CrashRecoveryFaults(3, interval=1), nodes)
        assert schedule.faulty_nodes() == ["n7", "n8", "n9"]

        killed = []
        for _ in range(3):
            action = schedule.update()
            assert len(action.kill) == 1
            killed.extend(action.kill)
        assert sorted(killed) == ["n7", "n8", "n9"]

        action = schedule.update()
        assert not action.kill
        assert sorted(action.boot) == ["n7", "n8", "n9"]
