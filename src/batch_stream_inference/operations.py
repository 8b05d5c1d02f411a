"""Batchable operations: how a chunk becomes a request and how the response
is split back into one payload per item.
"""

from dataclasses import dataclass
from typing import Any, Sequence

from batch_stream_inference.errors import InvalidArgumentError, PermanentFailureError


@dataclass(frozen=True)
class BatchOperation:
    name: str
    # Request field holding the list of inputs.
    input_key: str = "input"
    # Response field holding one entry per input.
    result_key: str = "data"
    # Field to extract from each entry; the whole entry when None.
    item_key: str | None = None

    def build_payload(self, model: str, items: Sequence[Any]) -> dict[str, Any]:
        return {"model": model, self.input_key: list(items)}

    def split_response(self, body: dict, count: int) -> list[Any]:
        entries = body.get(self.result_key) if isinstance(body, dict) else None
        if not isinstance(entries, list):
            raise PermanentFailureError(f"{self.name}: response has no {self.result_key!r} list")
        if len(entries) != count:
            raise PermanentFailureError(
                f"{self.name}: expected {count} results, got {len(entries)}"
            )
        # Servers may return entries out of order; honour the explicit index.
        if all(isinstance(e, dict) and "index" in e for e in entries):
            entries = sorted(entries, key=lambda e: e["index"])
        if self.item_key is None:
            return entries
        try:
            return [e[self.item_key] for e in entries]
        except (KeyError, TypeError) as e:
            raise PermanentFailureError(f"{self.name}: entry missing {self.item_key!r}") from e


OPERATIONS: dict[str, BatchOperation] = {
    "embeddings": BatchOperation("embeddings", item_key="embedding"),
    "moderations": BatchOperation("moderations", result_key="results"),
    "classifications": BatchOperation("classifications", result_key="results"),
}


def get_operation(name: str) -> BatchOperation:
    try:
        return OPERATIONS[name]
    except KeyError:
        raise InvalidArgumentError(
            f"Unknown batch operation {name!r}. Valid: {', '.join(sorted(OPERATIONS))}"
        ) from None
