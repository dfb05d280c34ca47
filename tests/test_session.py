import unittest

from consilium.errors import ValidationError
from consilium.session import (
    Doctor,
    DiscussionHistory,
    PatientCase,
    Settings,
    sanitize_image_recognitions,
    sanitize_linked_cases,
)


class DoctorTests(unittest.TestCase):
    def test_from_dict_defaults(self):
        doctor = Doctor.from_dict({"id": "d1"})
        self.assertEqual(doctor.name, "d1")
        self.assertEqual(doctor.provider, "openai")
        self.assertTrue(doctor.active)
        self.assertFalse(doctor.can_call)

    def test_missing_id_rejected(self):
        with self.assertRaises(ValidationError):
            Doctor.from_dict({"name": "Nobody"})

    def test_to_dict_masks_key(self):
        doctor = Doctor.from_dict({"id": "d1", "api_key": "sk-secret"})
        self.assertEqual(doctor.to_dict()["api_key"], "***")
        self.assertEqual(doctor.to_dict(include_secrets=True)["api_key"], "sk-secret")


class PatientCaseTests(unittest.TestCase):
    def test_update_coerces_age(self):
        case = PatientCase()
        case.update({"name": "Li", "age": "54"})
        self.assertEqual(case.age, 54)
        case.update({"age": "unknown"})
        self.assertIsNone(case.age)

    def test_image_recognitions_fill_result(self):
        case = PatientCase.from_dict({
            "image_recognitions": [
                {"name": "ct.png", "result": "Nodule in the right lobe", "status": "success"},
                {"name": "xray.png", "status": "recognizing"},
            ]
        })
        self.assertEqual(len(case.image_recognitions), 2)
        self.assertEqual(case.image_recognitions[1].status, "queued")
        self.assertEqual(case.image_recognition_result, "Image 1 (ct.png): Nodule in the right lobe")

    def test_recognition_status_inferred(self):
        items = sanitize_image_recognitions([{"error": "bad image"}, {"result": "ok"}, "junk"])
        self.assertEqual([item.status for item in items], ["error", "success"])


class LinkedCaseTests(unittest.TestCase):
    def test_sanitize_skips_invalid_and_fills_defaults(self):
        linked = sanitize_linked_cases([{}, "x", {"source_id": "s1", "patient_age": "40"}])
        self.assertEqual(len(linked), 1)
        self.assertEqual(linked[0].id, "s1")
        self.assertEqual(linked[0].patient_age, 40)
        self.assertTrue(linked[0].consultation_name.startswith("Linked consultation"))

    def test_non_list_is_empty(self):
        self.assertEqual(sanitize_linked_cases(None), [])


class DiscussionHistoryTests(unittest.TestCase):
    def test_sequence_numbers_increase(self):
        history = DiscussionHistory()
        first = history.append("system", "start")
        second = history.append("patient", "hello", author="Patient")
        self.assertLess(first.seq, second.seq)
        self.assertEqual([e.seq for e in history.after(first.seq)], [second.seq])

    def test_only_placeholders_are_removable(self):
        history = DiscussionHistory()
        doctor = Doctor(id="d1", name="Dr. One")
        placeholder = history.begin_typing(doctor)
        entry = history.append("doctor", "reply", doctor_id="d1", doctor_name="Dr. One")
        history.remove_placeholder(placeholder)
        self.assertEqual(len(history), 1)
        with self.assertRaises(ValueError):
            history.remove_placeholder(entry)

    def test_unknown_type_rejected(self):
        with self.assertRaises(ValueError):
            DiscussionHistory().append("gossip", "x")

    def test_to_dict_drops_empty_fields(self):
        history = DiscussionHistory()
        history.append("system", "start")
        self.assertEqual(history.to_list(), [{"seq": 1, "type": "system", "content": "start", "author": ""}])


class SettingsTests(unittest.TestCase):
    def test_update_ignores_invalid_values(self):
        settings = Settings(global_system_prompt="sys", summary_prompt="sum")
        settings.update({"turn_order": "alphabetical", "global_system_prompt": ""})
        self.assertEqual(settings.turn_order, "random")
        self.assertEqual(settings.global_system_prompt, "sys")
        settings.update({"turn_order": "fixed", "max_rounds_without_elimination": 0})
        self.assertEqual(settings.turn_order, "fixed")
        self.assertEqual(settings.max_rounds_without_elimination, 1)


if __name__ == "__main__":
    unittest.main()
