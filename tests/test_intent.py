import pytest

from syntropy_provision.errors import InvalidIntent
from syntropy_provision.intent import ProvisionIntent, check_node_name, ensure_valid, validate_intent


@pytest.mark.parametrize('name', ['abc', 'a' * 50, 'node-01', 'rack_2-node'])
def test_node_name_accepts(name):
    assert check_node_name(name) is None


@pytest.mark.parametrize('name', ['', 'ab', 'a' * 51, 'node.01', 'node 01', 'node/01'])
def test_node_name_rejects(name):
    assert check_node_name(name) is not None


def test_valid_intent_has_no_violations():
    assert validate_intent(ProvisionIntent(node_name='node-01')) == []


def test_validation_is_pure_and_repeatable():
    intent = ProvisionIntent(node_name='x', label='waytoolonglabel', discovery_endpoint='-bad-')
    first = validate_intent(intent)
    second = validate_intent(intent)
    assert first == second
    assert len(first) == 3


def test_all_violations_are_aggregated():
    intent = ProvisionIntent(
        node_name='no',
        description='two\nlines',
        coordinates='x' * 101,
        label='',
        discovery_endpoint='bad host',
        iso_path='  ',
        device_selector='sdb',
        created_by='',
    )
    with pytest.raises(InvalidIntent) as excinfo:
        ensure_valid(intent)

    fields = [field for field, _ in excinfo.value.violations]
    assert fields == [
        'node_name', 'description', 'coordinates', 'label',
        'discovery_endpoint', 'iso_path', 'device_selector', 'created_by',
    ]
    assert excinfo.value.exit_code == 2


@pytest.mark.parametrize('selector', ['auto', '/dev/sdb', '/dev/nvme1n1', 'PHYSICALDRIVE2', r'\\.\PHYSICALDRIVE3'])
def test_device_selectors_accepted(selector):
    assert validate_intent(ProvisionIntent(node_name='node-01', device_selector=selector)) == []


def test_label_is_normalized_to_upper_case():
    intent = ensure_valid(ProvisionIntent(node_name='node-01', label='usb_01'))
    assert intent.label == 'USB_01'
    assert intent.auto_detect
