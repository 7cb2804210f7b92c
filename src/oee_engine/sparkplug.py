"""Sparkplug B protobuf schema.

Only the parts of ``sparkplug_b.proto`` the engine reads and writes are
declared: Payload (timestamp, metrics, seq, uuid, body) and Payload.Metric
with its scalar value fields. Fields the schema leaves out (metadata,
properties, datasets, templates) survive parsing as unknown fields.
"""

from typing import Any, Optional, Tuple

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

PACKAGE = "org.eclipse.tahu.protobuf"

_FIELD = descriptor_pb2.FieldDescriptorProto

# Sparkplug B DataType codes
DATATYPE_CODES = {
    "Int8": 1,
    "Int16": 2,
    "Int32": 3,
    "Int64": 4,
    "UInt8": 5,
    "UInt16": 6,
    "UInt32": 7,
    "UInt64": 8,
    "Float": 9,
    "Double": 10,
    "Boolean": 11,
    "String": 12,
    "DateTime": 13,
    "Text": 14,
    "UUID": 15,
    "Bytes": 17,
    "File": 18,
}
DATATYPE_NAMES = {code: name for name, code in DATATYPE_CODES.items()}

VALUE_FIELDS = {
    "Int8": "int_value",
    "Int16": "int_value",
    "Int32": "int_value",
    "UInt8": "int_value",
    "UInt16": "int_value",
    "UInt32": "int_value",
    "Int64": "long_value",
    "UInt64": "long_value",
    "DateTime": "long_value",
    "Float": "float_value",
    "Double": "double_value",
    "Boolean": "boolean_value",
    "String": "string_value",
    "Text": "string_value",
    "UUID": "string_value",
    "Bytes": "bytes_value",
    "File": "bytes_value",
}

SIGNED_BITS = {"Int8": 8, "Int16": 16, "Int32": 32, "Int64": 64}
FIELD_BITS = {"int_value": 32, "long_value": 64}


def _build_payload_class():
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="oee_engine/sparkplug_b.proto", package=PACKAGE, syntax="proto2"
    )

    payload = file_proto.message_type.add(name="Payload")
    metric = payload.nested_type.add(name="Metric")
    metric.oneof_decl.add(name="value")

    for name, number, field_type in (
        ("name", 1, _FIELD.TYPE_STRING),
        ("alias", 2, _FIELD.TYPE_UINT64),
        ("timestamp", 3, _FIELD.TYPE_UINT64),
        ("datatype", 4, _FIELD.TYPE_UINT32),
        ("is_historical", 5, _FIELD.TYPE_BOOL),
        ("is_transient", 6, _FIELD.TYPE_BOOL),
        ("is_null", 7, _FIELD.TYPE_BOOL),
    ):
        metric.field.add(name=name, number=number, type=field_type, label=_FIELD.LABEL_OPTIONAL)

    for name, number, field_type in (
        ("int_value", 10, _FIELD.TYPE_UINT32),
        ("long_value", 11, _FIELD.TYPE_UINT64),
        ("float_value", 12, _FIELD.TYPE_FLOAT),
        ("double_value", 13, _FIELD.TYPE_DOUBLE),
        ("boolean_value", 14, _FIELD.TYPE_BOOL),
        ("string_value", 15, _FIELD.TYPE_STRING),
        ("bytes_value", 16, _FIELD.TYPE_BYTES),
    ):
        metric.field.add(
            name=name, number=number, type=field_type, label=_FIELD.LABEL_OPTIONAL, oneof_index=0
        )

    payload.field.add(name="timestamp", number=1, type=_FIELD.TYPE_UINT64, label=_FIELD.LABEL_OPTIONAL)
    payload.field.add(
        name="metrics",
        number=2,
        type=_FIELD.TYPE_MESSAGE,
        label=_FIELD.LABEL_REPEATED,
        type_name=f".{PACKAGE}.Payload.Metric",
    )
    payload.field.add(name="seq", number=3, type=_FIELD.TYPE_UINT64, label=_FIELD.LABEL_OPTIONAL)
    payload.field.add(name="uuid", number=4, type=_FIELD.TYPE_STRING, label=_FIELD.LABEL_OPTIONAL)
    payload.field.add(name="body", number=5, type=_FIELD.TYPE_BYTES, label=_FIELD.LABEL_OPTIONAL)

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(file_proto.SerializeToString())
    return message_factory.GetMessageClass(pool.FindMessageTypeByName(f"{PACKAGE}.Payload"))


Payload = _build_payload_class()


def read_metric_value(metric) -> Tuple[Any, str]:
    """(value, datatype name) of a Payload.Metric; null metrics give None."""
    datatype = DATATYPE_NAMES.get(metric.datatype, "")
    field_name = metric.WhichOneof("value")
    if metric.is_null or field_name is None:
        return None, datatype

    value = getattr(metric, field_name)
    bits = SIGNED_BITS.get(datatype)
    if bits is not None:
        value &= (1 << bits) - 1
        if value >= 1 << (bits - 1):
            value -= 1 << bits
    return value, datatype


def write_metric_value(metric, value: Optional[Any], datatype: str) -> None:
    """Set datatype and value on a Payload.Metric."""
    if datatype not in VALUE_FIELDS:
        raise ValueError(f"Unsupported Sparkplug datatype: {datatype}")
    metric.datatype = DATATYPE_CODES[datatype]
    if value is None:
        metric.is_null = True
        return

    field_name = VALUE_FIELDS[datatype]
    if field_name in FIELD_BITS:
        value = int(value) & ((1 << FIELD_BITS[field_name]) - 1)
    elif field_name in ("float_value", "double_value"):
        value = float(value)
    elif field_name == "boolean_value":
        value = bool(value)
    elif field_name == "string_value":
        value = str(value)
    setattr(metric, field_name, value)
