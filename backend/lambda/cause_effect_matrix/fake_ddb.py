"""fake_ddb.py — In-memory DynamoDB client double for the matrix tests.

Understands exactly the request shapes ``MatrixRepository`` sends: key-based
get/put/delete, and update_item with ``SET a = :v, #m.#k = :v`` /
``REMOVE #m.#k`` clauses under an equality or attribute_exists condition.
Items are kept in DynamoDB's typed wire format.
"""
from __future__ import annotations

import copy
import json
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import ClientError


def _conditional_failure(operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        operation,
    )


class FakeDynamoClient:
    def __init__(self) -> None:
        self.items: Dict[str, Dict[str, Any]] = {}
        self.calls: list[tuple[str, Dict[str, Any]]] = []
        # Called (once per update) before the condition is evaluated.
        self.before_update: Optional[Callable[[], None]] = None

    @staticmethod
    def _key_id(key: Dict[str, Any]) -> str:
        return json.dumps(
            {"collection": key["collection"], "document_id": key["document_id"]},
            sort_keys=True,
        )

    def get_item(self, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append(("get_item", kwargs))
        item = self.items.get(self._key_id(kwargs["Key"]))
        return {"Item": copy.deepcopy(item)} if item else {}

    def put_item(self, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append(("put_item", kwargs))
        item = copy.deepcopy(kwargs["Item"])
        self.items[self._key_id(item)] = item
        return {}

    def delete_item(self, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append(("delete_item", kwargs))
        old = self.items.pop(self._key_id(kwargs["Key"]), None)
        if old and kwargs.get("ReturnValues") == "ALL_OLD":
            return {"Attributes": old}
        return {}

    def update_item(self, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append(("update_item", kwargs))
        hook, self.before_update = self.before_update, None
        if hook is not None:
            hook()

        key_id = self._key_id(kwargs["Key"])
        names = kwargs.get("ExpressionAttributeNames") or {}
        values = kwargs.get("ExpressionAttributeValues") or {}
        item = self.items.get(key_id)
        if not self._condition_holds(item, kwargs.get("ConditionExpression", ""), names, values):
            raise _conditional_failure("UpdateItem")

        item = copy.deepcopy(item) if item else dict(copy.deepcopy(kwargs["Key"]))
        expression = kwargs["UpdateExpression"]
        set_part, _, remove_part = expression.partition(" REMOVE ")
        for clause in set_part[len("SET "):].split(", "):
            path, _, placeholder = clause.partition(" = ")
            self._assign(item, path.strip(), names, copy.deepcopy(values[placeholder.strip()]))
        if remove_part:
            for path in remove_part.split(", "):
                self._remove(item, path.strip(), names)
        self.items[key_id] = item
        return {}

    @staticmethod
    def _condition_holds(item: Optional[Dict[str, Any]], condition: str, names: Dict[str, str], values: Dict[str, Any]) -> bool:
        if not condition:
            return True
        for term in condition.split(" AND "):
            term = term.strip()
            if term.startswith("attribute_exists("):
                name = names[term[len("attribute_exists("):-1]]
                if item is None or name not in item:
                    return False
            elif term.startswith("attribute_not_exists("):
                name = names[term[len("attribute_not_exists("):-1]]
                if item is not None and name in item:
                    return False
            else:
                left, _, right = term.partition(" = ")
                if item is None or item.get(names[left.strip()]) != values[right.strip()]:
                    return False
        return True

    @staticmethod
    def _assign(item: Dict[str, Any], path: str, names: Dict[str, str], value: Any) -> None:
        parts = [names[p] for p in path.split(".")]
        if len(parts) == 1:
            item[parts[0]] = value
            return
        item[parts[0]]["M"][parts[1]] = value

    @staticmethod
    def _remove(item: Dict[str, Any], path: str, names: Dict[str, str]) -> None:
        parts = [names[p] for p in path.split(".")]
        if len(parts) == 1:
            item.pop(parts[0], None)
            return
        item[parts[0]]["M"].pop(parts[1], None)
