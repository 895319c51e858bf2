import unittest

from adosync.errors import ValidationError
from adosync.services.transforms import Transform, parse_transform_spec


class TransformTests(unittest.TestCase):
    def test_severity_round_trip_on_known_values(self):
        for number in (1, 2, 3):
            self.assertEqual(Transform.SEVERITY_MAPPING.reverse(Transform.SEVERITY_MAPPING.forward(number)), number)

    def test_severity_forward(self):
        t = Transform.SEVERITY_MAPPING
        self.assertEqual(t.forward(1), "LOW")
        self.assertEqual(t.forward("3"), "HIGH")
        self.assertEqual(t.forward("2 - Medium"), "MEDIUM")
        self.assertEqual(t.forward(7), "MEDIUM")
        self.assertEqual(t.forward("Critical"), "MEDIUM")

    def test_severity_reverse_defaults_to_medium(self):
        t = Transform.SEVERITY_MAPPING
        self.assertEqual(t.reverse("high"), 3)
        self.assertEqual(t.reverse("UNKNOWN"), 2)

    def test_state_to_status(self):
        t = Transform.STATE_TO_STATUS
        self.assertEqual(t.forward("New"), "GREEN")
        self.assertEqual(t.forward("Active"), "GREEN")
        self.assertEqual(t.forward("Resolved"), "RED")
        self.assertEqual(t.forward("Closed"), "RED")
        self.assertEqual(t.forward("Blocked"), "YELLOW")
        self.assertEqual(t.reverse("GREEN"), "Active")
        self.assertEqual(t.reverse("red"), "Resolved")
        self.assertEqual(t.reverse("YELLOW"), "Active")

    def test_state_to_risk_status(self):
        t = Transform.STATE_TO_RISK_STATUS
        self.assertEqual(t.forward("active"), "OPEN")
        self.assertEqual(t.forward("Resolved"), "MITIGATED")
        self.assertEqual(t.forward("Closed"), "CLOSED")
        self.assertEqual(t.forward("Whatever"), "OPEN")
        self.assertEqual(t.reverse("OPEN"), "Active")
        self.assertEqual(t.reverse("MITIGATED"), "Resolved")
        self.assertEqual(t.reverse("CLOSED"), "Closed")
        self.assertEqual(t.reverse("other"), "Active")

    def test_state_to_action_status(self):
        t = Transform.STATE_TO_ACTION_STATUS
        self.assertEqual(t.forward("New"), "OPEN")
        self.assertEqual(t.forward("In Progress"), "IN_PROGRESS")
        self.assertEqual(t.forward("Active"), "IN_PROGRESS")
        self.assertEqual(t.forward("Done"), "DONE")
        self.assertEqual(t.forward("Removed"), "OPEN")
        self.assertEqual(t.reverse("OPEN"), "New")
        self.assertEqual(t.reverse("IN_PROGRESS"), "Active")
        self.assertEqual(t.reverse("DONE"), "Closed")
        self.assertEqual(t.reverse("?"), "New")

    def test_extract_display_name(self):
        t = Transform.EXTRACT_DISPLAY_NAME
        self.assertEqual(t.forward({"displayName": "Ada Lovelace", "uniqueName": "ada@contoso.com"}), "Ada Lovelace")
        self.assertEqual(t.forward({"uniqueName": "grace@contoso.com"}), "grace")
        self.assertEqual(t.forward("Plain Name"), "Plain Name")
        self.assertIsNone(t.forward({"id": "abc"}))

    def test_extract_display_name_has_no_reverse(self):
        self.assertFalse(Transform.EXTRACT_DISPLAY_NAME.reversible)
        with self.assertRaises(ValidationError):
            Transform.EXTRACT_DISPLAY_NAME.reverse("Ada")

    def test_parse_transform_spec(self):
        self.assertIs(parse_transform_spec('{"type": "severity_mapping"}'), Transform.SEVERITY_MAPPING)
        self.assertIs(parse_transform_spec(Transform.STATE_TO_STATUS.to_spec()), Transform.STATE_TO_STATUS)

        for bad in [None, "", "not json", "[]", '{"type": "uppercase"}', '{"kind": "severity_mapping"}']:
            with self.assertRaises(ValidationError):
                parse_transform_spec(bad)
