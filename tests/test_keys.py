import unittest
from hashlib import sha256

from subflag import ContextKeyBuilder, EvaluationContext


class TestContextKeyBuilder(unittest.TestCase):
    def test_no_context_equivalence(self):
        kb = ContextKeyBuilder()
        empties = [
            None,
            {},
            EvaluationContext(),
            EvaluationContext(targeting_key="", attributes={}),
            EvaluationContext(targeting_key=None, kind="organization"),
        ]
        for context in empties:
            with self.subTest(context):
                self.assertEqual(kb.build_key("new-checkout", context), "subflag:new-checkout:no_context")

    def test_fingerprint(self):
        ctx = EvaluationContext("user-1", attributes={"plan": "pro", "age": 30})
        expected = sha256(b'tk="user-1"|k="user"|"age"=30|"plan"="pro"|').hexdigest()[:16]
        self.assertEqual(ContextKeyBuilder.context_fingerprint(ctx), expected)
        self.assertEqual(ContextKeyBuilder().build_key("f", ctx), f"subflag:f:{expected}")

    def test_order_independence(self):
        a = EvaluationContext("user-1", attributes={"plan": "pro", "meta": {"x": 1, "y": [1, 2]}, "age": 30})
        b = EvaluationContext("user-1", attributes={"age": 30, "meta": {"y": [1, 2], "x": 1}, "plan": "pro"})
        self.assertEqual(ContextKeyBuilder.context_fingerprint(a), ContextKeyBuilder.context_fingerprint(b))

    def test_distinct_contexts(self):
        contexts = [
            EvaluationContext("user-1"),
            EvaluationContext("user-2"),
            EvaluationContext("user-1", kind="organization"),
            EvaluationContext("user-1", attributes={"plan": "pro"}),
            EvaluationContext("user-1", attributes={"plan": "free"}),
            EvaluationContext("user-1", attributes={"n": 1}),
            EvaluationContext("user-1", attributes={"n": "1"}),
            EvaluationContext(attributes={"plan": "pro"}),
        ]
        fingerprints = {ContextKeyBuilder.context_fingerprint(c) for c in contexts}
        self.assertEqual(len(fingerprints), len(contexts))
        for fp in fingerprints:
            self.assertEqual(len(fp), 16)

    def test_namespace_and_generator(self):
        ctx = EvaluationContext("user-1")
        self.assertTrue(ContextKeyBuilder(namespace="app").build_key("f", ctx).startswith("app:f:"))

        kb = ContextKeyBuilder(key_generator=lambda flag_key, context: f"{flag_key}/{context.targeting_key if context else '-'}")
        self.assertEqual(kb.build_key("f", ctx), "f/user-1")
        self.assertEqual(kb.build_key("f", None), "f/-")
        # Mappings are converted before reaching the generator.
        self.assertEqual(kb.build_key("f", {"targetingKey": "user-2"}), "f/user-2")

    def test_mixed_nested_keys(self):
        a = EvaluationContext("u1", attributes={"meta": {1: "a", "b": 2, (1, 2): {3, "x"}}})
        b = EvaluationContext("u1", attributes={"meta": {(1, 2): {"x", 3}, "b": 2, 1: "a"}})
        kb = ContextKeyBuilder()
        self.assertEqual(kb.build_key("f", a), kb.build_key("f", b))
        # Integer and string keys with the same text stay distinct.
        c = EvaluationContext("u1", attributes={"meta": {"1": "a", "b": 2, (1, 2): {3, "x"}}})
        self.assertNotEqual(kb.context_fingerprint(a), kb.context_fingerprint(c))
        # Non-string attribute names.
        d = EvaluationContext("u1", attributes={1: "a", "b": 2})
        self.assertEqual(len(kb.context_fingerprint(d)), 16)

    def test_separators_in_values(self):
        cases = [
            (EvaluationContext("u|k=user", kind=None), EvaluationContext("u", kind="user")),
            (EvaluationContext("u", attributes={"a": '1|"b"=2'}), EvaluationContext("u", attributes={"a": "1", "b": 2})),
            (EvaluationContext("u", attributes={"a=1|b": 2}), EvaluationContext("u", attributes={"a": "1|b=2"})),
        ]
        for x, y in cases:
            with self.subTest(x=x, y=y):
                self.assertNotEqual(ContextKeyBuilder.context_fingerprint(x), ContextKeyBuilder.context_fingerprint(y))
