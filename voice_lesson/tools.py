"""
ツール契約 - バックエンドに宣言する関数スキーマと受信した呼び出しの検証

ツールスキーマはバックエンドとの外部契約（バージョン付き）として扱います。
バックエンドが返したツール呼び出しは、副作用（ヒント表示・レッスン完了）を
実行する前に、宣言済みの名前・引数スキーマと照合されます。
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Tuple

from .errors import InvalidToolCall
from .models import ToolCall

logger = logging.getLogger(__name__)

# JSON Schemaのプリミティブ型とPython型の対応
_JSON_TYPES = {
    "string": (str,),
    "boolean": (bool,),
    "integer": (int,),
    "number": (int, float),
    "object": (dict,),
    "array": (list, tuple),
}


@dataclass(frozen=True)
class ToolDeclaration:
    """
    単一ツールの宣言

    Attributes:
        name (str): ツール名
        description (str): バックエンド向けの説明（いつ呼ぶべきか）
        parameters (dict): 引数のJSON Schema（type=object）
    """
    name: str
    description: str
    parameters: Dict = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_function_declaration(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


class ToolContract:
    """
    宣言済みツールの集合

    Attributes:
        version (str): 契約バージョン（ペルソナスクリプトと対で管理）
        declarations (tuple[ToolDeclaration]): 宣言順のツール一覧
    """

    def __init__(self, declarations: Iterable[ToolDeclaration], version: str = "1"):
        self.declarations: Tuple[ToolDeclaration, ...] = tuple(declarations)
        self.version = version
        self._by_name = {d.name: d for d in self.declarations}
        if len(self._by_name) != len(self.declarations):
            raise ValueError("Duplicate tool names in contract")

    @property
    def names(self):
        return tuple(self._by_name)

    def to_schema(self) -> list:
        """バックエンド送信用の関数宣言リスト"""
        return [d.to_function_declaration() for d in self.declarations]

    def validate(self, call: ToolCall) -> ToolCall:
        """
        ツール呼び出しを宣言済みスキーマと照合

        未宣言の名前、必須引数の欠落、型の不一致、未宣言の引数を検出します。

        Args:
            call (ToolCall): バックエンドから受け取ったツール呼び出し

        Returns:
            ToolCall: 検証済みの呼び出し（入力と同一オブジェクト）

        Raises:
            InvalidToolCall: スキーマに一致しない場合

        Examples:
            >>> TAXI_RIDE_TOOLS.validate(ToolCall("show_hint", {"hint_text": "Voy al hotel"}))
            ToolCall(name='show_hint', ...)
        """
        declaration = self._by_name.get(call.name)
        if declaration is None:
            raise InvalidToolCall(
                f"Undeclared tool '{call.name}' (declared: {list(self._by_name)})"
            )

        schema = declaration.parameters or {}
        properties = schema.get("properties", {})
        args = dict(call.args)

        missing = [name for name in schema.get("required", []) if name not in args]
        if missing:
            raise InvalidToolCall(f"Tool '{call.name}' is missing required argument(s): {missing}")

        unknown = [name for name in args if name not in properties]
        if unknown:
            raise InvalidToolCall(f"Tool '{call.name}' received undeclared argument(s): {unknown}")

        for name, value in args.items():
            expected = properties[name].get("type")
            if expected is None:
                continue
            python_types = _JSON_TYPES.get(expected)
            if python_types is None:
                continue
            # boolはintのサブクラスなので数値型とは区別する
            if isinstance(value, bool) and expected in ("integer", "number"):
                raise InvalidToolCall(f"Tool '{call.name}' argument '{name}' must be {expected}")
            if not isinstance(value, python_types):
                raise InvalidToolCall(
                    f"Tool '{call.name}' argument '{name}' must be {expected}, "
                    f"got {type(value).__name__}"
                )
        return call

    def __contains__(self, name):
        return name in self._by_name

    def __len__(self):
        return len(self.declarations)
