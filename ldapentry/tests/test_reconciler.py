# mypy: disable-error-code="attr-defined"
# type: ignore
"""
Tests for EntryReconciler.

The call shapes are checked against a mocked directory client; the last suite
runs whole lifecycles against python-ldap-faker.
"""

import json
import unittest
from unittest.mock import MagicMock, call, patch

import django
from django.conf import settings
from django.test import override_settings
from ldap_faker.unittest import LDAPFakerMixin

from ldapentry.client import ANY_OBJECT, LdapClient
from ldapentry.differ import Delete, Replace
from ldapentry.exceptions import ProtocolError
from ldapentry.reconciler import (
    EntryConfig,
    EntryLifecycle,
    EntryReconciler,
    EntryState,
    Plan,
    parse_import_id,
)

LDAP_SERVERS = {
    "test_server": {
        "write": {
            "url": "ldap://localhost:389",
            "user": "cn=admin,dc=example,dc=com",
            "password": "admin",
            "use_starttls": False,
            "tls_verify": "never",
            "timeout": 15.0,
            "follow_referrals": False,
        },
    }
}

if not settings.configured:
    settings.configure(LDAP_SERVERS=LDAP_SERVERS)
    django.setup()

DN = "uid=alice,ou=users,dc=example,dc=com"


class ReconcilerTestCase(unittest.TestCase):

    def setUp(self):
        self.client = MagicMock(spec=LdapClient)
        self.client.search.return_value = []
        self.client.delete.return_value = True
        self.reconciler = EntryReconciler(self.client)


class TestCreate(ReconcilerTestCase):
    """Test entry creation."""

    def test_single_add_with_managed_and_write_only(self):
        config = EntryConfig(
            dn=DN,
            attributes={
                "objectClass": ["inetOrgPerson", "top"],
                "cn": ["Alice Johnson"],
                "sn": ["Johnson"],
                "description": None,
                "mail": [],
            },
            attributes_wo={"userPassword": ["secret"]},
            attributes_wo_version=1,
        )
        state = self.reconciler.create(config)
        self.client.add.assert_called_once_with(
            DN,
            {
                "objectClass": ["inetOrgPerson", "top"],
                "cn": ["Alice Johnson"],
                "sn": ["Johnson"],
                "userPassword": ["secret"],
            },
        )
        self.client.modify.assert_not_called()
        self.assertEqual(state.dn, DN)
        self.assertEqual(state.id, DN)
        self.assertEqual(state.attributes_wo_version, 1)
        self.assertEqual(
            state.attributes,
            {
                "objectClass": ["inetOrgPerson", "top"],
                "cn": ["Alice Johnson"],
                "sn": ["Johnson"],
                "description": None,
                "mail": [],
            },
        )
        self.assertNotIn("userPassword", state.attributes)
        self.assertNotIn("secret", json.dumps(state.to_dict()))

    def test_write_only_sent_without_a_revision(self):
        config = EntryConfig(dn=DN, attributes={"cn": ["Alice"]}, attributes_wo={"userPassword": ["secret"]})
        self.reconciler.create(config)
        _, attributes = self.client.add.call_args[0]
        self.assertEqual(attributes["userPassword"], ["secret"])

    def test_failed_add_propagates(self):
        self.client.add.side_effect = ProtocolError(68, "Already exists")
        with self.assertRaises(ProtocolError):
            self.reconciler.create(EntryConfig(dn=DN, attributes={"cn": ["Alice"]}))


class TestRead(ReconcilerTestCase):
    """Test refreshing state from the server."""

    def test_requests_only_managed_names(self):
        self.client.search.return_value = [(DN, {"CN": ["Alice Johnson"]})]
        state = EntryState(dn=DN, attributes={"cn": ["Alice"], "mail": ["a@x.com"], "description": None})
        refreshed = self.reconciler.read(state)
        self.client.search.assert_called_once_with(DN, "base", ANY_OBJECT, ["cn", "mail"])
        self.assertEqual(
            refreshed.attributes,
            {"cn": ["Alice Johnson"], "mail": [], "description": None},
        )

    def test_keeps_revision(self):
        self.client.search.return_value = [(DN, {"cn": ["Alice"]})]
        state = EntryState(dn=DN, attributes={"cn": ["Alice"]}, attributes_wo_version=3)
        self.assertEqual(self.reconciler.read(state).attributes_wo_version, 3)

    def test_gone(self):
        self.client.search.return_value = []
        self.assertIsNone(self.reconciler.read(EntryState(dn=DN, attributes={"cn": ["Alice"]})))


class TestUpdate(ReconcilerTestCase):
    """Test converging an existing entry."""

    def test_no_changes_sends_nothing(self):
        state = EntryState(dn=DN, attributes={"cn": ["Alice"], "member": ["u3", "u1", "u2"]})
        config = EntryConfig(dn=DN, attributes={"cn": ["Alice"], "member": ["u1", "u2", "u3"]})
        self.reconciler.update(state, config)
        self.client.modify.assert_not_called()
        self.client.search.assert_not_called()

    def test_single_modify(self):
        state = EntryState(dn=DN, attributes={"mail": ["a@x.com"], "description": ["old"]})
        config = EntryConfig(dn=DN, attributes={"mail": ["a@x.com", "b@x.com"]})
        new_state = self.reconciler.update(state, config)
        self.client.modify.assert_called_once_with(
            DN, [Replace("mail", ("a@x.com", "b@x.com")), Delete("description")]
        )
        self.assertEqual(new_state.attributes, {"mail": ["a@x.com", "b@x.com"]})

    def test_same_revision_does_not_resend(self):
        state = EntryState(dn=DN, attributes={"cn": ["Alice"]}, attributes_wo_version=1)
        config = EntryConfig(
            dn=DN,
            attributes={"cn": ["Alice"]},
            attributes_wo={"userPassword": ["x"]},
            attributes_wo_version=1,
        )
        self.reconciler.update(state, config)
        self.client.modify.assert_not_called()

    def test_new_revision_resends(self):
        state = EntryState(dn=DN, attributes={"cn": ["Alice"]}, attributes_wo_version=1)
        config = EntryConfig(
            dn=DN,
            attributes={"cn": ["Alice"]},
            attributes_wo={"userPassword": ["x"]},
            attributes_wo_version=2,
        )
        new_state = self.reconciler.update(state, config)
        self.client.modify.assert_called_once_with(DN, [Replace("userPassword", ("x",))])
        self.assertEqual(new_state.attributes_wo_version, 2)
        self.assertNotIn("userPassword", new_state.attributes)

    def test_failed_modify_keeps_old_revision(self):
        state = EntryState(dn=DN, attributes={"cn": ["Alice"]}, attributes_wo_version=1)
        config = EntryConfig(
            dn=DN,
            attributes={"cn": ["Alice"]},
            attributes_wo={"userPassword": ["x"]},
            attributes_wo_version=2,
        )
        self.client.modify.side_effect = ProtocolError(19, "Constraint violation")
        with self.assertRaises(ProtocolError):
            self.reconciler.update(state, config)
        self.assertEqual(state.attributes_wo_version, 1)
        # the next cycle, from the unchanged state, sends the payload again
        self.client.modify.side_effect = None
        self.reconciler.update(state, config)
        self.assertEqual(self.client.modify.call_count, 2)

    def test_write_only_wins_over_managed(self):
        state = EntryState(dn=DN, attributes={"userPassword": ["old"]}, attributes_wo_version=1)
        config = EntryConfig(
            dn=DN,
            attributes={"userPassword": ["a"]},
            attributes_wo={"userPassword": ["b"]},
            attributes_wo_version=2,
        )
        self.reconciler.update(state, config)
        self.client.modify.assert_called_once_with(DN, [Replace("userPassword", ("b",))])

    def test_deletes_come_last(self):
        state = EntryState(dn=DN, attributes={"description": ["old"]}, attributes_wo_version=1)
        config = EntryConfig(
            dn=DN,
            attributes={},
            attributes_wo={"userPassword": ["x"]},
            attributes_wo_version=2,
        )
        self.reconciler.update(state, config)
        self.client.modify.assert_called_once_with(
            DN, [Replace("userPassword", ("x",)), Delete("description")]
        )

    def test_dn_change_is_refused(self):
        state = EntryState(dn=DN, attributes={"cn": ["Alice"]})
        config = EntryConfig(dn="uid=alice,ou=people,dc=example,dc=com", attributes={"cn": ["Alice"]})
        with self.assertRaises(ValueError):
            self.reconciler.update(state, config)

    def test_dn_case_change_is_an_update(self):
        state = EntryState(dn=DN, attributes={"cn": ["Alice"]})
        config = EntryConfig(dn=DN.upper(), attributes={"cn": ["Alice"]})
        self.reconciler.update(state, config)
        self.client.modify.assert_not_called()


class TestManagementTransitions(ReconcilerTestCase):
    """Test attributes moving in and out of management."""

    def test_newly_managed_matching_remote_is_kept(self):
        self.client.search.return_value = [(DN, {"description": ["external"]})]
        state = EntryState(dn=DN, attributes={"cn": ["Alice"], "description": None})
        config = EntryConfig(dn=DN, attributes={"cn": ["Alice"], "description": ["external"]})
        new_state = self.reconciler.update(state, config)
        self.client.search.assert_called_once_with(DN, "base", ANY_OBJECT, ["description"])
        self.client.modify.assert_not_called()
        self.assertEqual(new_state.attributes["description"], ["external"])

    def test_newly_managed_differing_remote_is_replaced(self):
        self.client.search.return_value = [(DN, {"description": ["external"]})]
        state = EntryState(dn=DN, attributes={"description": None})
        config = EntryConfig(dn=DN, attributes={"description": ["ours"]})
        self.reconciler.update(state, config)
        self.client.modify.assert_called_once_with(DN, [Replace("description", ("ours",))])

    def test_newly_managed_empty_with_nothing_remote(self):
        self.client.search.return_value = [(DN, {})]
        state = EntryState(dn=DN, attributes={"description": None})
        config = EntryConfig(dn=DN, attributes={"description": []})
        self.reconciler.update(state, config)
        self.client.modify.assert_not_called()

    def test_newly_managed_empty_deletes_remote(self):
        self.client.search.return_value = [(DN, {"description": ["external"]})]
        state = EntryState(dn=DN, attributes={"description": None})
        config = EntryConfig(dn=DN, attributes={"description": []})
        self.reconciler.update(state, config)
        self.client.modify.assert_called_once_with(DN, [Delete("description")])

    def test_dropping_an_empty_attribute_sends_nothing(self):
        state = EntryState(dn=DN, attributes={"cn": ["Alice"], "mail": []})
        config = EntryConfig(dn=DN, attributes={"cn": ["Alice"]})
        new_state = self.reconciler.update(state, config)
        self.client.modify.assert_not_called()
        self.assertEqual(new_state.attributes, {"cn": ["Alice"]})

    def test_managed_to_unmanaged_leaves_remote_alone(self):
        state = EntryState(dn=DN, attributes={"description": ["ours"]})
        config = EntryConfig(dn=DN, attributes={"description": None})
        new_state = self.reconciler.update(state, config)
        self.client.modify.assert_not_called()
        self.assertIsNone(new_state.attributes["description"])


class TestDelete(ReconcilerTestCase):

    def test_delete(self):
        self.assertTrue(self.reconciler.delete(EntryState(dn=DN, attributes={})))
        self.client.delete.assert_called_once_with(DN)

    def test_already_gone(self):
        self.client.delete.return_value = False
        self.assertFalse(self.reconciler.delete(EntryState(dn=DN, attributes={})))


class TestImport(ReconcilerTestCase):
    """Test import identifiers and importing entries."""

    def test_parse_bare_dn(self):
        self.assertEqual(parse_import_id(DN), (DN, ["objectClass"]))

    def test_parse_json(self):
        import_id = json.dumps({"dn": DN, "attributes": ["cn", "sn"]})
        self.assertEqual(parse_import_id(import_id), (DN, ["cn", "sn"]))

    def test_parse_json_identity(self):
        import_id = json.dumps({"identity": DN})
        self.assertEqual(parse_import_id(import_id), (DN, ["objectClass"]))

    @override_settings(LDAPENTRY_IMPORT_DEFAULT_ATTRIBUTES=["objectClass", "cn"])
    def test_parse_default_attributes_setting(self):
        self.assertEqual(parse_import_id(DN), (DN, ["objectClass", "cn"]))

    def test_parse_errors(self):
        for import_id in (
            "",
            "   ",
            "{not json",
            json.dumps({"attributes": ["cn"]}),
            json.dumps({"dn": DN, "attributes": "cn"}),
            json.dumps({"dn": DN, "attributes": ["cn", 1]}),
            "{}",
            json.dumps({"dn": 5}),
        ):
            with self.subTest(import_id=import_id), self.assertRaises(ValueError):
                parse_import_id(import_id)

    def test_import_reads_named_attributes(self):
        self.client.search.return_value = [(DN, {"cn": ["Alice"], "sn": ["Johnson"]})]
        state = self.reconciler.import_entry(json.dumps({"dn": DN, "attributes": ["cn", "sn", "mail"]}))
        self.client.search.assert_called_once_with(DN, "base", ANY_OBJECT, ["cn", "sn", "mail"])
        self.assertEqual(state.attributes, {"cn": ["Alice"], "sn": ["Johnson"], "mail": []})
        self.assertIsNone(state.attributes_wo_version)

    def test_import_missing(self):
        self.client.search.return_value = []
        self.assertIsNone(self.reconciler.import_entry(DN))


class TestPlanAndApply(ReconcilerTestCase):
    """Test plan() and apply()."""

    def test_plan_create(self):
        plan = self.reconciler.plan(None, EntryConfig(dn=DN, attributes={"cn": ["Alice"]}))
        self.assertEqual(plan.action, Plan.CREATE)
        self.assertEqual(plan.state.attributes, {"cn": ["Alice"]})

    def test_plan_delete(self):
        plan = self.reconciler.plan(EntryState(dn=DN, attributes={"cn": ["Alice"]}), None)
        self.assertEqual(plan.action, Plan.DELETE)
        self.assertIsNone(plan.state)
        self.assertEqual(self.reconciler.plan(None, None).action, Plan.NOOP)

    def test_plan_noop_keeps_state_order(self):
        state = EntryState(dn=DN, attributes={"member": ["u3", "u1", "u2"]})
        config = EntryConfig(dn=DN, attributes={"member": ["u1", "u2", "u3"]})
        plan = self.reconciler.plan(state, config)
        self.assertEqual(plan.action, Plan.NOOP)
        self.assertEqual(plan.state.attributes, {"member": ["u3", "u1", "u2"]})
        self.assertEqual(plan.operations, [])

    def test_plan_update(self):
        state = EntryState(dn=DN, attributes={"member": ["u1"]})
        config = EntryConfig(dn=DN, attributes={"member": ["u1", "u2"]})
        plan = self.reconciler.plan(state, config)
        self.assertEqual(plan.action, Plan.UPDATE)
        self.assertEqual(plan.operations, [Replace("member", ("u1", "u2"))])
        self.client.modify.assert_not_called()

    def test_plan_revision_change_is_an_update(self):
        state = EntryState(dn=DN, attributes={"cn": ["Alice"]}, attributes_wo_version=1)
        config = EntryConfig(
            dn=DN, attributes={"cn": ["Alice"]}, attributes_wo={"userPassword": ["x"]}, attributes_wo_version=2
        )
        plan = self.reconciler.plan(state, config)
        self.assertEqual(plan.action, Plan.UPDATE)
        self.assertEqual(plan.operations, [Replace("userPassword", ("x",))])

    def test_plan_unmanaging_is_an_update_without_operations(self):
        state = EntryState(dn=DN, attributes={"description": ["ours"]})
        config = EntryConfig(dn=DN, attributes={"description": None})
        plan = self.reconciler.plan(state, config)
        self.assertEqual(plan.action, Plan.UPDATE)
        self.assertEqual(plan.operations, [])

    def test_plan_replace(self):
        state = EntryState(dn=DN, attributes={"cn": ["Alice"]})
        config = EntryConfig(dn="uid=alice,ou=people,dc=example,dc=com", attributes={"cn": ["Alice"]})
        self.assertEqual(self.reconciler.plan(state, config).action, Plan.REPLACE)

    def test_apply_replace(self):
        state = EntryState(dn=DN, attributes={"cn": ["Alice"]})
        new_dn = "uid=alice,ou=people,dc=example,dc=com"
        config = EntryConfig(dn=new_dn, attributes={"cn": ["Alice"]})
        new_state = self.reconciler.apply(state, config)
        self.assertEqual(new_state.dn, new_dn)
        self.assertEqual(
            self.client.mock_calls,
            [call.delete(DN), call.add(new_dn, {"cn": ["Alice"]})],
        )

    def test_apply_noop(self):
        state = EntryState(dn=DN, attributes={"cn": ["Alice"]})
        config = EntryConfig(dn=DN, attributes={"cn": ["Alice"]})
        self.assertIs(self.reconciler.apply(state, config), state)
        self.assertEqual(self.client.mock_calls, [])

    def test_apply_delete(self):
        state = EntryState(dn=DN, attributes={"cn": ["Alice"]})
        self.assertIsNone(self.reconciler.apply(state, None))
        self.client.delete.assert_called_once_with(DN)


class TestStateAndConfig(unittest.TestCase):

    def test_config_from_dict(self):
        config = EntryConfig.from_dict(
            {"dn": DN, "attributes": {"cn": ["Alice"]}, "attributes_wo": {"userPassword": ["x"]}}
        )
        self.assertEqual(config.attributes_wo, {"userPassword": ["x"]})
        self.assertNotIn("userPassword", repr(config))

    def test_config_from_dict_rejects_bad_payloads(self):
        for payload in (
            {"attributes": {}},
            {"dn": DN},
            {"dn": DN, "attributes": {}, "id": DN},
            {"dn": DN, "attributes": {}, "password": "x"},
        ):
            with self.subTest(payload=payload), self.assertRaises(ValueError):
                EntryConfig.from_dict(payload)

    def test_state_round_trip(self):
        state = EntryState(dn=DN, attributes={"cn": ["Alice"], "description": None}, attributes_wo_version="v1")
        data = state.to_dict()
        self.assertEqual(data["id"], DN)
        self.assertEqual(EntryState.from_dict(data), state)

    def test_transition_is_logged(self):
        with self.assertLogs("ldapentry.reconciler", level="DEBUG") as cm:
            new = EntryLifecycle.transition(DN, EntryLifecycle.OBSERVED, EntryLifecycle.CONVERGING)
        self.assertEqual(new, EntryLifecycle.CONVERGING)
        self.assertIn("from=observed to=converging", cm.output[0])


class TestReconcilerWithFaker(LDAPFakerMixin, unittest.TestCase):
    """Run whole entry lifecycles against python-ldap-faker."""

    ldap_modules = ["ldapentry"]

    @classmethod
    def setUpClass(cls):
        super().setUpClass()
        cls.test_objects = [
            [
                "cn=admin,dc=example,dc=com",
                {
                    "cn": [b"admin"],
                    "userPassword": [b"admin"],
                    "objectclass": [b"simpleSecurityObject", b"organizationalRole", b"top"],
                },
            ],
        ]

    def setUp(self):
        super().setUp()
        self.settings_patcher = patch("django.conf.settings.LDAP_SERVERS", LDAP_SERVERS, create=True)
        self.settings_patcher.start()
        self.server_factory.default.raw_objects.clear()
        self.server_factory.default.objects.clear()
        for dn, attrs in self.test_objects:
            self.server_factory.default.register_object((dn, attrs))
        self.reconciler = EntryReconciler(LdapClient.from_settings("test_server", "write", page_size=0))

    def tearDown(self):
        self.settings_patcher.stop()
        super().tearDown()

    def test_lifecycle(self):
        config = EntryConfig(
            dn=DN,
            attributes={
                "objectclass": ["inetOrgPerson", "top"],
                "uid": ["alice"],
                "cn": ["Alice Johnson"],
                "sn": ["Johnson"],
                "mail": ["alice@example.com"],
            },
            attributes_wo={"userPassword": ["secret"]},
            attributes_wo_version=1,
        )
        state = self.reconciler.apply(None, config)
        self.assertEqual(state.attributes_wo_version, 1)

        state = self.reconciler.read(state)
        self.assertEqual(state.attributes["mail"], ["alice@example.com"])
        self.assertEqual(self.reconciler.plan(state, config).action, Plan.NOOP)

        config.attributes["mail"] = ["alice@example.com", "ajohnson@example.com"]
        state = self.reconciler.apply(state, config)
        state = self.reconciler.read(state)
        self.assertCountEqual(state.attributes["mail"], ["alice@example.com", "ajohnson@example.com"])

        self.assertIsNone(self.reconciler.apply(state, None))
        self.assertIsNone(self.reconciler.read(state))

    def test_drop_attribute_created_empty(self):
        config = EntryConfig(
            dn=DN,
            attributes={
                "objectclass": ["inetOrgPerson", "top"],
                "uid": ["alice"],
                "cn": ["Alice Johnson"],
                "sn": ["Johnson"],
                "mail": [],
            },
        )
        state = self.reconciler.apply(None, config)
        self.assertEqual(state.attributes["mail"], [])

        del config.attributes["mail"]
        state = self.reconciler.apply(state, config)
        self.assertNotIn("mail", state.attributes)
        self.assertEqual(self.reconciler.plan(state, config).action, Plan.NOOP)

        state = self.reconciler.read(state)
        self.assertEqual(state.attributes["cn"], ["Alice Johnson"])

    def test_import(self):
        self.server_factory.default.register_object(
            (DN, {"uid": [b"alice"], "cn": [b"Alice"], "sn": [b"Johnson"], "objectclass": [b"inetOrgPerson", b"top"]})
        )
        state = self.reconciler.import_entry(json.dumps({"dn": DN, "attributes": ["cn", "mail"]}))
        self.assertEqual(state.attributes, {"cn": ["Alice"], "mail": []})


if __name__ == "__main__":
    unittest.main()
