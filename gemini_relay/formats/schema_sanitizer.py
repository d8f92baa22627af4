"""
工具参数 Schema 清洗
把 Claude 工具的 JSON Schema 改写成 Gemini 接受的受限方言：
大写类型枚举、null 类型折叠为 nullable、去掉不支持的关键字。
纯函数：总是构建新树，不修改入参，也从不拒绝任何 schema。
"""
from typing import Any, Dict, List, Optional

GEMINI_TYPES = (
    "STRING",
    "NUMBER",
    "INTEGER",
    "BOOLEAN",
    "ARRAY",
    "OBJECT",
    "NULL",
    "TYPE_UNSPECIFIED",
)

# Gemini 不支持的关键字，直接丢弃
UNSUPPORTED_KEYWORDS = frozenset({
    "additionalProperties",
    "default",
    "minItems",
    "maxItems",
    "uniqueItems",
    "pattern",
    "minLength",
    "maxLength",
    "title",
    "examples",
    "$schema",
    "$id",
})


def _map_type(value: Any) -> str:
    """单个 JSON Schema 类型 -> Gemini 类型，未知值降级为 TYPE_UNSPECIFIED"""
    if isinstance(value, str):
        upper = value.upper()
        if upper in GEMINI_TYPES:
            return upper
    return "TYPE_UNSPECIFIED"


def _is_null_schema(schema: Any) -> bool:
    return isinstance(schema, dict) and schema.get("type") == "null"


def _flatten_type_list(types: List[Any], result: Dict[str, Any]) -> None:
    """type 数组：拆出 "null" 设置 nullable，其余单个转标量、多个转 anyOf"""
    if "null" in types:
        result["nullable"] = True
    remaining = [t for t in types if t != "null"]
    if len(remaining) == 1:
        result["type"] = _map_type(remaining[0])
    elif len(remaining) > 1:
        result["anyOf"] = [{"type": _map_type(t)} for t in remaining]


def sanitize_schema(schema: Any) -> Optional[Dict[str, Any]]:
    """清洗一个 schema 节点，返回新的 dict；非 dict 输入返回 None"""
    if not isinstance(schema, dict):
        return None

    result: Dict[str, Any] = {}
    source = schema

    # 1. type 与 anyOf 同时存在时 anyOf 优先
    if "type" in source and "anyOf" in source:
        source = {k: v for k, v in source.items() if k != "type"}

    # 2. 两分支且其一为 null 的 anyOf 折叠成另一分支 + nullable
    any_of = source.get("anyOf")
    if isinstance(any_of, list) and len(any_of) == 2:
        null_index = next((i for i, branch in enumerate(any_of) if _is_null_schema(branch)), None)
        other = any_of[1 - null_index] if null_index is not None else None
        if isinstance(other, dict):
            result["nullable"] = True
            merged = {k: v for k, v in source.items() if k != "anyOf"}
            merged.update(other)
            source = merged

    # 3. type 数组
    if isinstance(source.get("type"), list):
        _flatten_type_list(source["type"], result)

    # 4. 其余字段
    for field_name, field_value in source.items():
        if field_value is None:
            continue

        if field_name == "type":
            if field_value == "null" or isinstance(field_value, list):
                continue
            result["type"] = _map_type(field_value)
        elif field_name == "items":
            if isinstance(field_value, dict):
                result["items"] = sanitize_schema(field_value)
            elif isinstance(field_value, list) and field_value:
                # tuple 形式的 items 取第一个
                result["items"] = sanitize_schema(field_value[0]) or {}
        elif field_name == "anyOf":
            if not isinstance(field_value, list):
                continue
            branches = []
            for branch in field_value:
                if _is_null_schema(branch):
                    result["nullable"] = True
                    continue
                cleaned = sanitize_schema(branch)
                if cleaned is not None:
                    branches.append(cleaned)
            result["anyOf"] = branches
        elif field_name == "properties":
            if isinstance(field_value, dict):
                result["properties"] = {
                    name: sanitize_schema(prop) or {}
                    for name, prop in field_value.items()
                }
        elif field_name in UNSUPPORTED_KEYWORDS:
            continue
        else:
            # enum / format / required / description 等元数据原样保留
            result[field_name] = field_value

    return result
