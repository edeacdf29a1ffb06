from fractions import Fraction

import pytest

from cranesched.kube import (
    BINARY_SI,
    Container,
    Node,
    NodeInfo,
    Pod,
    Quantity,
    Resource,
    new_resource,
    parse_quantity,
)

MEM_UNIT = 1024 * 1024 * 1024
CPU_UNIT = 1000


def test_binary_suffix_value():
    assert parse_quantity("1Gi").value() == MEM_UNIT
    assert parse_quantity("1Gi").format == BINARY_SI


def test_whole_cpu_milli_value():
    assert parse_quantity("1").milli_value() == CPU_UNIT


def test_decimal_and_milli_forms_agree():
    assert parse_quantity("2.5") == parse_quantity("2500m")
    assert parse_quantity("2.5").milli_value() == parse_quantity("2500m").milli_value()


def test_value_rounds_up():
    assert parse_quantity("500m").value() == 1


def test_exponent_form():
    assert parse_quantity("1e3") == parse_quantity("1k")


def test_negative_quantity_orders_below_zero():
    assert parse_quantity("-1") < parse_quantity("0")


@pytest.mark.parametrize("text", ["abc", "", "1.2.3", "1Xi", " 1"])
def test_invalid_quantity(text):
    with pytest.raises(ValueError):
        parse_quantity(text)


@pytest.mark.parametrize("text", ["1Gi", "2.5", "500m", "4Mi", "1k", "3", "1536", "0"])
def test_string_round_trip(text):
    quantity = parse_quantity(text)
    assert parse_quantity(str(quantity)) == quantity


def test_canonical_strings():
    assert str(parse_quantity("1Gi")) == "1Gi"
    assert str(parse_quantity("2500m")) == "2500m"
    assert str(parse_quantity("1000m")) == "1"


def test_quantity_built_from_fraction():
    assert Quantity(Fraction(3, 2)).milli_value() == parse_quantity("1500m").milli_value()


def test_pod_key_requires_uid():
    with pytest.raises(ValueError):
        Pod(name="p").key()
    assert Pod(name="p", uid="uid-7").key() == "uid-7"


def test_resource_add_native_resources():
    resource = new_resource({"cpu": parse_quantity("2"), "memory": parse_quantity("1Gi")})
    assert resource.milli_cpu == parse_quantity("2").milli_value()
    assert resource.memory == MEM_UNIT
    resource.add({"cpu": parse_quantity("1")})
    assert resource.milli_cpu == parse_quantity("3").milli_value()


def test_resource_add_scalar_and_ignored():
    resource = new_resource(
        {"hugepages-2Mi": parse_quantity("4Mi"), "unknown": parse_quantity("5")}
    )
    assert resource.scalar_resources == {"hugepages-2Mi": parse_quantity("4Mi").value()}


def test_resource_add_extended_resource():
    resource = new_resource({"example.com/gpu": parse_quantity("2")})
    resource.add({"example.com/gpu": parse_quantity("1")})
    assert resource.scalar_resources["example.com/gpu"] == parse_quantity("3").value()


def test_new_resource_from_none_is_empty():
    assert new_resource(None) == Resource()


def test_clone_is_independent():
    original = Resource(milli_cpu=CPU_UNIT, scalar_resources={"example.com/gpu": 1})
    copy = original.clone()
    assert copy == original
    copy.scalar_resources["example.com/gpu"] = 9
    copy.milli_cpu = 0
    assert original.scalar_resources["example.com/gpu"] == 1
    assert original.milli_cpu == CPU_UNIT


def test_node_info_add_pod():
    pod = Pod(name="p", uid="u", containers=[Container(requests={"cpu": parse_quantity("1")})])
    info = NodeInfo(node=Node(name="master"))
    info.add_pod(pod)
    assert info.pods == [pod]