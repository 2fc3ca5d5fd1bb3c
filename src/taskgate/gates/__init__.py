from taskgate.gates.engine import (
    check_all_gates,
    check_gate_a,
    check_gate_b,
    check_gate_c,
    check_single_gate,
    load_gate_result,
    reset_gates,
)
from taskgate.gates.model import (
    AllGatesResult,
    GateCheck,
    GateEntry,
    GateFailure,
    GateState,
    SpecCheck,
    collect_failures,
)

__all__ = [
    "AllGatesResult",
    "GateCheck",
    "GateEntry",
    "GateFailure",
    "GateState",
    "SpecCheck",
    "check_all_gates",
    "check_gate_a",
    "check_gate_b",
    "check_gate_c",
    "check_single_gate",
    "collect_failures",
    "load_gate_result",
    "reset_gates",
]
