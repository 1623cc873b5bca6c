import unittest
from types import SimpleNamespace

from tuitionbill.payer import PayerKey, resolve_payer


def _participant(student_id="s1", guardian_id=None, is_primary_payer=False):
    return SimpleNamespace(student_id=student_id, guardian_id=guardian_id, is_primary_payer=is_primary_payer)


class PayerResolverTestCase(unittest.TestCase):
    def setUp(self):
        self.lesson = SimpleNamespace(id="l1")

    def test_primary_guardian_pays(self):
        payer = resolve_payer(self.lesson, _participant("s1", "g1", True))
        self.assertEqual(payer, PayerKey.guardian("g1"))

    def test_guardian_not_primary_falls_back_to_student(self):
        payer = resolve_payer(self.lesson, _participant("s1", "g1", False))
        self.assertEqual(payer, PayerKey.student("s1"))

    def test_no_guardian_means_student(self):
        payer = resolve_payer(self.lesson, _participant("s2", None, True))
        self.assertEqual(payer, PayerKey("student", "s2"))

    def test_guardian_and_student_with_same_id_never_collide(self):
        keys = {PayerKey.guardian("x1"), PayerKey.student("x1")}
        self.assertEqual(len(keys), 2)

    def test_parse_roundtrip_and_validation(self):
        key = PayerKey.guardian("g-42")
        self.assertEqual(PayerKey.parse(str(key)), key)
        with self.assertRaises(ValueError):
            PayerKey.parse("teacher:t1")
        with self.assertRaises(ValueError):
            PayerKey("guardian", "")


if __name__ == "__main__":
    unittest.main()
