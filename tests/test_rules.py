"""Tests for rich rule rendering and firewalld fault mapping."""

import pytest
from jeepney import DBusAddress, new_error, new_method_call
from jeepney.wrappers import DBusErrorResponse

import rbh


def fault(message, name='org.fedoraproject.FirewallD1.Exception'):
    """Builds the DBusErrorResponse firewalld would send for message."""
    call = new_method_call(
        DBusAddress(rbh.FWD_OBJECT_PATH, rbh.FWD_BUS_NAME, rbh.FWD_ZONE_INTERFACE),
        'addRichRule'
    )
    return DBusErrorResponse(new_error(call, name, 's', (message,)))


class TestRichRule:

    def test_drop_rule_ipv4(self):
        rule = rbh.drop_rule('192.168.1.10', 600)
        assert str(rule) == "rule family='ipv4' source address='192.168.1.10/32' drop"
        assert rule.timeout == 600

    def test_reject_rule_ipv4(self):
        rule = rbh.reject_rule('192.168.1.10', 120)
        assert str(rule) == "rule family='ipv4' source address='192.168.1.10/32' reject"

    def test_ipv6_uses_full_host_mask(self):
        rule = rbh.drop_rule('2001:db8::1', 600)
        assert rule.family == 'ipv6'
        assert str(rule) == "rule family='ipv6' source address='2001:db8::1/128' drop"

    def test_ipv4_mapped_ipv6_is_rendered_as_ipv4(self):
        rule = rbh.reject_rule('::ffff:192.168.1.10')
        assert str(rule) == "rule family='ipv4' source address='192.168.1.10/32' reject"

    @pytest.mark.parametrize('ip', ['', 'not-an-ip', '300.1.1.1', '192.168.1.10/24'])
    def test_invalid_address(self, ip):
        with pytest.raises(rbh.InvalidAddress):
            rbh.drop_rule(ip, 600)

    def test_invalid_address_is_a_value_error(self):
        with pytest.raises(ValueError):
            rbh.reject_rule('bogus')


class TestKnownErrors:

    def test_already_enabled_is_rule_already_active(self):
        err = rbh.to_known_error(fault(
            "ALREADY_ENABLED: rule family='ipv4' source address='192.168.1.10/32' drop"))
        assert isinstance(err, rbh.RuleAlreadyActive)

    def test_other_fault_is_rule_insert_failed(self):
        err = rbh.to_known_error(fault('INVALID_ZONE: nowhere'))
        assert isinstance(err, rbh.RuleInsertFailed)
        assert 'INVALID_ZONE: nowhere' in str(err)

    def test_prefix_must_match_literally(self):
        err = rbh.to_known_error(fault('Error: ALREADY_ENABLED'))
        assert isinstance(err, rbh.RuleInsertFailed)

    def test_fault_without_body_uses_error_name(self):
        call = new_method_call(
            DBusAddress(rbh.FWD_OBJECT_PATH, rbh.FWD_BUS_NAME), 'getDefaultZone')
        err = rbh.to_known_error(DBusErrorResponse(
            new_error(call, 'org.freedesktop.DBus.Error.AccessDenied')))
        assert isinstance(err, rbh.RuleInsertFailed)
        assert 'AccessDenied' in str(err)
