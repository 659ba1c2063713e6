"""
Tests for lifecycle transitions and registry status mapping.
"""

from django.test import SimpleTestCase

from apps.einvoicing.status import (
    ALLOWED_TRANSITIONS,
    DocumentKind,
    LifecycleStatus,
    RegistryStatusMapper,
    can_transition,
    display_priority,
    map_registry_status,
)

S = LifecycleStatus


class TransitionTableTests(SimpleTestCase):
    """Transition validity"""

    def test_every_status_has_an_entry(self):
        """Every lifecycle status appears in the transition table"""
        self.assertEqual(set(ALLOWED_TRANSITIONS), set(LifecycleStatus))

    def test_forward_path(self):
        """draft -> submitted -> validated -> accepted -> sent are all allowed"""
        self.assertTrue(can_transition(S.DRAFT, S.SUBMITTED))
        self.assertTrue(can_transition(S.SUBMITTED, S.VALIDATED))
        self.assertTrue(can_transition(S.VALIDATED, S.ACCEPTED))
        self.assertTrue(can_transition(S.ACCEPTED, S.SENT))

    def test_regressions_are_refused(self):
        """A later status never moves back to an earlier one"""
        self.assertFalse(can_transition(S.VALIDATED, S.SUBMITTED))
        self.assertFalse(can_transition(S.ACCEPTED, S.VALIDATED))
        self.assertFalse(can_transition(S.SUBMITTED, S.DRAFT))

    def test_validation_failed_can_still_get_a_verdict(self):
        """A document that failed registry validation may still be accepted or rejected"""
        self.assertTrue(can_transition(S.VALIDATION_FAILED, S.ACCEPTED))
        self.assertTrue(can_transition(S.VALIDATION_FAILED, S.REJECTED))
        self.assertFalse(can_transition(S.VALIDATION_FAILED, S.SENT))

    def test_terminal_statuses(self):
        """Rejected, sent, failed and cancelled have no way out"""
        self.assertEqual(
            LifecycleStatus.terminal_statuses(),
            {'rejected', 'sent', 'failed', 'cancelled'},
        )
        for status in LifecycleStatus.terminal_statuses():
            for target in LifecycleStatus:
                self.assertFalse(can_transition(status, target))

    def test_accepts_plain_strings(self):
        """Stored string values work as well as enum members"""
        self.assertTrue(can_transition('received', 'accepted'))
        self.assertFalse(can_transition('received', 'sent'))

    def test_tracked_statuses(self):
        """Only statuses still awaiting registry signals are tracked"""
        self.assertEqual(
            LifecycleStatus.tracked_statuses(),
            {'submitted', 'validated', 'accepted', 'received'},
        )


class RegistryStatusMapperTests(SimpleTestCase):
    """Single mapping point from registry strings to lifecycle states"""

    def test_table_entries(self):
        """Known strings map regardless of case and padding"""
        self.assertEqual(map_registry_status('VALIDATED'), S.VALIDATED)
        self.assertEqual(map_registry_status(' valid '), S.VALIDATED)
        self.assertEqual(map_registry_status('Invalid'), S.VALIDATION_FAILED)
        self.assertEqual(map_registry_status('validation_failed'), S.VALIDATION_FAILED)
        self.assertEqual(map_registry_status('REJECTED'), S.REJECTED)
        self.assertEqual(map_registry_status('ACCEPTED'), S.ACCEPTED)
        self.assertEqual(map_registry_status('processing'), S.SUBMITTED)
        self.assertEqual(map_registry_status('PENDING'), S.SUBMITTED)

    def test_unknown_strings_map_to_nothing(self):
        """Unrecognized, empty and missing strings are unmapped"""
        self.assertIsNone(map_registry_status('ARCHIVED'))
        self.assertIsNone(map_registry_status(''))
        self.assertIsNone(map_registry_status(None))

    def test_delivered_only_applies_while_submitted(self):
        """DELIVERED means sent only while the document awaits a verdict"""
        self.assertEqual(map_registry_status('DELIVERED', S.SUBMITTED), S.SENT)
        self.assertIsNone(map_registry_status('DELIVERED', S.VALIDATED))
        self.assertIsNone(map_registry_status('DELIVERED'))

    def test_target_of_ignores_conditions(self):
        """target_of reports where a string points, for repeat detection"""
        self.assertEqual(RegistryStatusMapper.target_of('delivered'), S.SENT)
        self.assertEqual(RegistryStatusMapper.target_of('VALID'), S.VALIDATED)
        self.assertIsNone(RegistryStatusMapper.target_of('nonsense'))

    def test_is_known(self):
        """Both plain and conditional strings are known"""
        self.assertTrue(RegistryStatusMapper.is_known('delivered'))
        self.assertTrue(RegistryStatusMapper.is_known('PENDING'))
        self.assertFalse(RegistryStatusMapper.is_known('lost'))


class DisplayAndKindTests(SimpleTestCase):
    """Display ordering and document kinds"""

    def test_display_priority_orders_by_urgency(self):
        """Failures sort above drafts, drafts above finished work"""
        self.assertGreater(display_priority('failed'), display_priority('draft'))
        self.assertGreater(display_priority('draft'), display_priority('accepted'))
        self.assertEqual(display_priority('unknown'), 0)

    def test_registry_type(self):
        """Envelope labels are the upper-cased kind"""
        self.assertEqual(DocumentKind.INVOICE.registry_type, 'INVOICE')
        self.assertEqual(DocumentKind.CREDIT_NOTE.registry_type, 'CREDIT_NOTE')

    def test_reference_kinds(self):
        """Only credit and debit notes reference an original invoice"""
        self.assertFalse(DocumentKind.INVOICE.is_reference_kind)
        self.assertTrue(DocumentKind.CREDIT_NOTE.is_reference_kind)
        self.assertTrue(DocumentKind.DEBIT_NOTE.is_reference_kind)
