"""
Gradient tape.

The tape is an append-only log of executed operations in execution order.
Reverse-mode differentiation filters it down to the nodes on a path from the
requested inputs to the differentiated value and walks them backwards,
summing each node's input gradients into a map keyed by tensor id.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from wgpu_dl import util
from wgpu_dl.errors import NonDifferentiableError, ShapeError

GradientFn = Callable[[Any, Any], Dict[str, Callable[[], Any]]]


@dataclass(frozen=True)
class TapeNode:
    """One recorded operation.

    Attributes:
        id: position-independent node identity
        kind: "kernel" or "custom_gradient"
        name: kernel name or custom gradient name
        inputs: input name -> Tensor
        args: plain kernel arguments
        output: output Tensor
        gradient: (dy, y) -> {input name: () -> input gradient}, None when
            the operation has no gradient rule
    """
    id: int
    kind: str
    name: str
    inputs: Dict[str, Any]
    output: Any
    gradient: Optional[GradientFn]
    args: Dict[str, Any] = field(default_factory=dict)


class Tape:
    """Append-only node log for one outermost gradients scope."""

    def __init__(self):
        self._nodes: List[TapeNode] = []

    def record(self, node: TapeNode) -> None:
        self._nodes.append(node)

    def nodes(self) -> Iterator[TapeNode]:
        """Recorded nodes in execution order; each call restarts from the first node."""
        yield from self._nodes

    def __len__(self) -> int:
        return len(self._nodes)


def _is_float(tensor) -> bool:
    return tensor.dtype == "float32"


def get_filtered_nodes_x_to_y(nodes: Iterable[TapeNode], xs: Sequence, y) -> List[TapeNode]:
    """Nodes lying on a path from any of xs to y, with inputs pruned to those depending on xs.

    Only float outputs carry dependence forward: integer and boolean results
    are piecewise constant, so comparisons, argmax and casts to int never join
    a gradient path.
    """
    tape = list(nodes)

    tensors_from_x = {x.id for x in xs}
    nodes_from_x = set()
    for node in tape:
        if any(t.id in tensors_from_x for t in node.inputs.values()) and _is_float(node.output):
            tensors_from_x.add(node.output.id)
            nodes_from_x.add(node.id)

    tensors_lead_to_y = {y.id}
    nodes_to_y = set()
    for node in reversed(tape):
        if node.output.id in tensors_lead_to_y:
            for t in node.inputs.values():
                tensors_lead_to_y.add(t.id)
            nodes_to_y.add(node.id)

    filtered = []
    for node in tape:
        if node.id in nodes_from_x and node.id in nodes_to_y:
            pruned_inputs = {name: t for name, t in node.inputs.items() if t.id in tensors_from_x}
            filtered.append(TapeNode(id=node.id, kind=node.kind, name=node.name,
                                     inputs=pruned_inputs, output=node.output,
                                     gradient=node.gradient, args=node.args))
    return filtered


def backpropagate_gradients(accumulated: Dict[int, Any], filtered_nodes: Sequence[TapeNode]) -> None:
    """Walk filtered nodes in reverse, summing input gradients into accumulated.

    Args:
        accumulated: tensor id -> gradient; must already hold the seed for y
        filtered_nodes: output of get_filtered_nodes_x_to_y
    """
    for node in reversed(filtered_nodes):
        dy = accumulated.get(node.output.id)
        if dy is None:
            continue
        if node.gradient is None:
            raise NonDifferentiableError(
                f"Cannot compute gradient: gradient function not found for {node.name}."
            )
        input_gradients = node.gradient(dy, node.output)
        for input_name, x in node.inputs.items():
            if input_name not in input_gradients:
                raise NonDifferentiableError(
                    f"Cannot backprop through input {input_name} of {node.name}. "
                    f"Available gradients found: {sorted(input_gradients)}."
                )
            dx = input_gradients[input_name]()
            if not util.arrays_equal(dx.shape, x.shape):
                raise ShapeError(
                    f"Error in gradient for op {node.name}. The gradient of input "
                    f"'{input_name}' has shape {dx.shape}, which does not match the "
                    f"shape of the input {x.shape}"
                )
            current = accumulated.get(x.id)
            if current is None:
                accumulated[x.id] = dx
            else:
                accumulated[x.id] = current.add(dx)
                current.dispose()
