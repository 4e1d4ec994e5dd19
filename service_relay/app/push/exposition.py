"""
Binary exposition of a metrics registry.

Metric families are encoded as Prometheus client-model ``MetricFamily``
protobuf messages, each prefixed with its varint length (the delimited
protobuf exposition format). The message types are declared here against the
protobuf runtime instead of shipping generated code.
"""

from typing import Dict, Iterable, List, Optional, Tuple

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from prometheus_client import CollectorRegistry
from prometheus_client.metrics_core import Metric

_PACKAGE = "io.prometheus.client"
_F = descriptor_pb2.FieldDescriptorProto

_SCALAR_TYPES = {
    "double": _F.TYPE_DOUBLE,
    "int64": _F.TYPE_INT64,
    "uint64": _F.TYPE_UINT64,
    "string": _F.TYPE_STRING,
}

# MetricType enum values
COUNTER = 0
GAUGE = 1
SUMMARY = 2
UNTYPED = 3
HISTOGRAM = 4
GAUGE_HISTOGRAM = 5

_METRIC_TYPES = (
    ("COUNTER", COUNTER),
    ("GAUGE", GAUGE),
    ("SUMMARY", SUMMARY),
    ("UNTYPED", UNTYPED),
    ("HISTOGRAM", HISTOGRAM),
    ("GAUGE_HISTOGRAM", GAUGE_HISTOGRAM),
)

# (message, ((field, number, type, repeated), ...))
_MESSAGES = (
    ("LabelPair", (("name", 1, "string", False), ("value", 2, "string", False))),
    ("Gauge", (("value", 1, "double", False),)),
    ("Counter", (("value", 1, "double", False),)),
    ("Quantile", (("quantile", 1, "double", False), ("value", 2, "double", False))),
    ("Summary", (
        ("sample_count", 1, "uint64", False),
        ("sample_sum", 2, "double", False),
        ("quantile", 3, "Quantile", True),
    )),
    ("Untyped", (("value", 1, "double", False),)),
    ("Bucket", (("cumulative_count", 1, "uint64", False), ("upper_bound", 2, "double", False))),
    ("Histogram", (
        ("sample_count", 1, "uint64", False),
        ("sample_sum", 2, "double", False),
        ("bucket", 3, "Bucket", True),
    )),
    ("Metric", (
        ("label", 1, "LabelPair", True),
        ("gauge", 2, "Gauge", False),
        ("counter", 3, "Counter", False),
        ("summary", 4, "Summary", False),
        ("untyped", 5, "Untyped", False),
        ("timestamp_ms", 6, "int64", False),
        ("histogram", 7, "Histogram", False),
    )),
    ("MetricFamily", (
        ("name", 1, "string", False),
        ("help", 2, "string", False),
        ("type", 3, "MetricType", False),
        ("metric", 4, "Metric", True),
    )),
)


def _field(name: str, number: int, kind: str, repeated: bool) -> descriptor_pb2.FieldDescriptorProto:
    field = _F(
        name=name,
        number=number,
        label=_F.LABEL_REPEATED if repeated else _F.LABEL_OPTIONAL,
    )
    if kind in _SCALAR_TYPES:
        field.type = _SCALAR_TYPES[kind]
    elif kind == "MetricType":
        field.type = _F.TYPE_ENUM
        field.type_name = f".{_PACKAGE}.{kind}"
    else:
        field.type = _F.TYPE_MESSAGE
        field.type_name = f".{_PACKAGE}.{kind}"
    return field


def _build_message_classes() -> Dict[str, type]:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="io/prometheus/client/metrics.proto",
        package=_PACKAGE,
        syntax="proto2",
    )
    enum = file_proto.enum_type.add(name="MetricType")
    for value_name, number in _METRIC_TYPES:
        enum.value.add(name=value_name, number=number)

    for message_name, fields in _MESSAGES:
        message = file_proto.message_type.add(name=message_name)
        for field_spec in fields:
            message.field.append(_field(*field_spec))

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(file_proto.SerializeToString())
    return {
        message_name: message_factory.GetMessageClass(
            pool.FindMessageTypeByName(f"{_PACKAGE}.{message_name}")
        )
        for message_name, _ in _MESSAGES
    }


_CLASSES = _build_message_classes()
MetricFamily = _CLASSES["MetricFamily"]


# protobuf only ships varint helpers under google.protobuf.internal, which is not public API
def _encode_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        bits = value & 0x7F
        value >>= 7
        if value:
            out.append(bits | 0x80)
        else:
            out.append(bits)
            return bytes(out)


def _decode_varint(buf: bytes, pos: int) -> Tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(buf):
            raise ValueError("truncated varint")
        byte = buf[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift >= 64:
            raise ValueError("varint too long")


def _label_key(labels: Dict[str, str], drop: Optional[str] = None) -> Tuple[Tuple[str, str], ...]:
    return tuple(sorted((k, v) for k, v in labels.items() if k != drop))


def _add_labels(metric, key: Tuple[Tuple[str, str], ...]) -> None:
    for name, value in key:
        metric.label.add(name=name, value=value)


def _scalar_family(metric: Metric, family_type: int, name: Optional[str] = None):
    family = MetricFamily(name=name or metric.name, help=metric.documentation, type=family_type)
    for sample in metric.samples:
        if sample.name.endswith("_created"):
            continue
        if family_type == COUNTER and not sample.name.endswith("_total"):
            continue
        out = family.metric.add()
        _add_labels(out, _label_key(sample.labels))
        if family_type == COUNTER:
            out.counter.value = sample.value
        elif family_type == GAUGE:
            out.gauge.value = sample.value
        else:
            out.untyped.value = sample.value
    return family


def _summary_family(metric: Metric):
    family = MetricFamily(name=metric.name, help=metric.documentation, type=SUMMARY)
    grouped: Dict[Tuple[Tuple[str, str], ...], object] = {}
    for sample in metric.samples:
        if sample.name.endswith("_created"):
            continue
        key = _label_key(sample.labels, drop="quantile")
        out = grouped.get(key)
        if out is None:
            out = family.metric.add()
            _add_labels(out, key)
            grouped[key] = out
        if sample.name == metric.name + "_count":
            out.summary.sample_count = int(sample.value)
        elif sample.name == metric.name + "_sum":
            out.summary.sample_sum = sample.value
        elif "quantile" in sample.labels:
            out.summary.quantile.add(quantile=float(sample.labels["quantile"]), value=sample.value)
    return family


def _histogram_family(metric: Metric, family_type: int):
    family = MetricFamily(name=metric.name, help=metric.documentation, type=family_type)
    count_suffix, sum_suffix = ("_count", "_sum") if family_type == HISTOGRAM else ("_gcount", "_gsum")
    grouped: Dict[Tuple[Tuple[str, str], ...], object] = {}
    for sample in metric.samples:
        if sample.name.endswith("_created"):
            continue
        key = _label_key(sample.labels, drop="le")
        out = grouped.get(key)
        if out is None:
            out = family.metric.add()
            _add_labels(out, key)
            grouped[key] = out
        if sample.name == metric.name + "_bucket":
            upper_bound = float(sample.labels["le"])
            # +Inf is implied by sample_count
            if upper_bound != float("inf"):
                out.histogram.bucket.add(cumulative_count=int(sample.value), upper_bound=upper_bound)
        elif sample.name == metric.name + count_suffix:
            out.histogram.sample_count = int(sample.value)
        elif sample.name == metric.name + sum_suffix:
            out.histogram.sample_sum = sample.value
    return family


def metric_to_family(metric: Metric):
    """Convert one collected prometheus_client metric into a ``MetricFamily``."""
    if metric.type == "counter":
        return _scalar_family(metric, COUNTER, name=metric.name + "_total")
    if metric.type == "gauge":
        return _scalar_family(metric, GAUGE)
    if metric.type == "summary":
        return _summary_family(metric)
    if metric.type == "histogram":
        return _histogram_family(metric, HISTOGRAM)
    if metric.type == "gaugehistogram":
        return _histogram_family(metric, GAUGE_HISTOGRAM)
    if metric.type == "info":
        return _scalar_family(metric, GAUGE, name=metric.name + "_info")
    if metric.type == "stateset":
        return _scalar_family(metric, GAUGE)
    return _scalar_family(metric, UNTYPED)


def gather(registry: CollectorRegistry, timestamp_ms: Optional[int] = None) -> List:
    """Snapshot every metric family in ``registry``.

    When ``timestamp_ms`` is given it is stamped on every metric as the
    collection time.
    """
    families = []
    for metric in registry.collect():
        family = metric_to_family(metric)
        if not family.metric:
            continue
        if timestamp_ms is not None:
            for out in family.metric:
                out.timestamp_ms = timestamp_ms
        families.append(family)
    return families


def encode_delimited(families: Iterable) -> bytes:
    """Serialize families as varint-length-delimited messages."""
    buf = bytearray()
    for family in families:
        data = family.SerializeToString()
        buf += _encode_varint(len(data))
        buf += data
    return bytes(buf)


def decode_delimited(buf: bytes) -> List:
    """Parse the output of ``encode_delimited`` back into ``MetricFamily`` messages."""
    families = []
    pos = 0
    while pos < len(buf):
        length, pos = _decode_varint(buf, pos)
        end = pos + length
        if end > len(buf):
            raise ValueError("truncated metric family")
        family = MetricFamily()
        family.ParseFromString(buf[pos:end])
        families.append(family)
        pos = end
    return families
