import unittest

from jsonschema.exceptions import ValidationError

from subflag import (
    CompiledConfig,
    Condition,
    Configuration,
    RuleNode,
    TargetingEngine,
    merge_configs,
)


class TestMergeConfig(unittest.TestCase):
    def test_merge_config(self):
        checkout = {"value_type": "boolean", "default": False}
        limits = {"value_type": "integer", "default": 5}
        theme = {"value_type": "string", "default": "light"}
        configs = [
            {"flags": {"new-checkout": checkout}},
            {"flags": {"max-projects": limits, "theme": theme}},
            {},
        ]
        merged = {"flags": {"new-checkout": checkout, "max-projects": limits, "theme": theme}}
        for order in [configs, configs[::-1], [configs[1], configs[2], configs[0]]]:
            with self.subTest(order):
                self.assertDictEqual(merge_configs(*order), merged)
        self.assertEqual(merge_configs(), {"flags": {}})
        c = CompiledConfig.from_dict(merge_configs(*configs))
        self.assertEqual(set(c.flags), {"new-checkout", "max-projects", "theme"})

    def test_duplicate_flags(self):
        a = {"flags": {"new-checkout": {"value_type": "boolean", "default": False}, "theme": {"value_type": "string", "default": "x"}}}
        b = {"flags": {"theme": {"value_type": "string", "default": "y"}}}
        with self.assertRaisesRegex(ValueError, r"Duplicate flag keys: \['theme'\]"):
            merge_configs(a, b)
        with self.assertRaisesRegex(ValueError, "Duplicate flag keys"):
            merge_configs(a, a)


class TestValidConfig(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.config = {
            "flags": {
                "new-checkout": {
                    "value_type": "boolean",
                    "default": False,
                    "rules": [
                        {
                            "value": True,
                            "variant": "staff",
                            "conditions": {
                                "type": "OR",
                                "conditions": [
                                    {"attribute": "email", "operator": "ENDS_WITH", "value": "@company.com"},
                                    {"attribute": "role", "operator": "in", "value": ["admin", "developer", "qa"]},
                                ],
                            },
                        },
                        {"value": "true", "percentage": "10"},
                    ],
                },
                "banner": {
                    "value_type": "object",
                    "default": '{"color": "blue"}',
                    "status": "DEPRECATED",
                    "metadata": {"owner": "growth"},
                },
                "nested": {
                    "value_type": "string",
                    "default": "off",
                    "rules": [
                        {
                            "value": "on",
                            "conditions": {
                                "conditions": [
                                    {"attribute": "plan", "operator": "EQUALS", "value": "pro"},
                                    {
                                        "type": "OR",
                                        "conditions": [
                                            {"attribute": "country", "operator": "IN", "value": ["AU", "NZ"]},
                                            {"attribute": "beta", "operator": "EQUALS", "value": True},
                                        ],
                                    },
                                ],
                            },
                        },
                        {"value": "never", "conditions": None},
                    ],
                },
                "disabled": {
                    "value_type": "float",
                    "default": 0.5,
                    "enabled": False,
                },
            },
        }

    def test_compile(self):
        c = CompiledConfig.from_dict(self.config)
        self.assertEqual(set(c.flags), {"new-checkout", "banner", "nested", "disabled"})

        checkout = c.get_flag("new-checkout")
        self.assertEqual(len(checkout.rules), 2)
        self.assertEqual(checkout.rules[0].variant, "staff")
        self.assertIsInstance(checkout.rules[0].conditions, RuleNode)
        self.assertEqual(checkout.rules[0].conditions.type, "OR")
        role = checkout.rules[0].conditions.children[1]
        self.assertIsInstance(role, Condition)
        self.assertEqual(role.operator, "IN")
        self.assertIsNone(checkout.rules[1].conditions)
        self.assertEqual(checkout.rules[1].percentage, 10)

        banner = c.get_flag("banner")
        self.assertEqual(banner.default, {"color": "blue"})
        self.assertEqual(banner.status, "DEPRECATED")
        self.assertEqual(banner.metadata, {"owner": "growth"})

        nested = c.get_flag("nested")
        self.assertEqual(nested.rules[0].conditions.type, "AND")
        self.assertIsInstance(nested.rules[0].conditions.children[1], RuleNode)

        self.assertIsNone(c.get_flag("missing"))
        self.assertEqual({f.key for f in c.get_all_enabled_flags()}, {"new-checkout", "banner", "nested"})

    def test_nested_evaluation(self):
        c = CompiledConfig.from_dict(self.config)
        engine = TargetingEngine()
        nested = c.get_flag("nested")
        cases = [
            # attributes, value
            ({"plan": "pro", "country": "AU"}, "on"),
            ({"plan": "pro", "beta": True}, "on"),
            ({"plan": "pro", "beta": "true"}, "never"),
            ({"plan": "free", "country": "AU"}, "never"),
        ]
        for attributes, value in cases:
            with self.subTest(attributes):
                self.assertEqual(engine.evaluate(nested, attributes).value, value)

    def test_config_serialization(self):
        c = CompiledConfig.from_dict(self.config)
        c2 = CompiledConfig.from_bytes(c.to_bytes())
        self.assertEqual(set(c2.flags), set(c.flags))
        engine = TargetingEngine()
        for key in c.flags:
            for context in [None, {"targeting_key": "user-1", "role": "qa"}, {"plan": "pro", "country": "NZ"}]:
                with self.subTest(key=key, context=context):
                    self.assertEqual(engine.evaluate(c.flags[key], context), engine.evaluate(c2.flags[key], context))

    def test_empty_config(self):
        self.assertEqual(CompiledConfig.from_dict({}).flags, {})
        self.assertEqual(CompiledConfig.from_dict({"flags": {}}).flags, {})


class TestInvalidConfigs(unittest.TestCase):
    def test_invalid_flag_def(self):
        cases = [
            {"flags": {"Bad_Key": {"value_type": "boolean", "default": False}}},
            {"flags": {"a": {"default": False}}},
            {"flags": {"a": {"value_type": "boolean"}}},
            {"flags": {"a": {"value_type": "boolean", "default": None}}},
            {"flags": {"a": {"value_type": "list", "default": []}}},
            {"flags": {"a": {"value_type": "boolean", "default": False, "enabled": "yes"}}},
            {"flags": {"a": {"value_type": "boolean", "default": False, "status": "ARCHIVED"}}},
            {"flags": {"a": {"value_type": "boolean", "default": False, "extra": 1}}},
            {"flags": {"a": {"value_type": "boolean", "default": False, "rules": [{}]}}},
            {"flags": {"a": {"value_type": "boolean", "default": False, "rules": [{"value": True, "variant": ""}]}}},
            {"flags": {"a": {"value_type": "boolean", "default": False, "rules": [{"value": True, "conditions": []}]}}},
            {
                "flags": {
                    "a": {
                        "value_type": "boolean",
                        "default": False,
                        "rules": [{"value": True, "conditions": {"conditions": [{"attribute": "", "operator": "EQUALS"}]}}],
                    }
                }
            },
            {"rules": {}},
        ]
        for config in cases:
            with self.subTest(config):
                with self.assertRaises(ValidationError):
                    CompiledConfig.from_dict(config)

    def test_invalid_semantics(self):
        def flag(**kw):
            return {"flags": {"a": {"value_type": "integer", "default": 1, **kw}}}

        cases = [
            (flag(default="lots"), "default is not a valid integer"),
            (flag(rules=[{"value": 2, "conditions": {"conditions": [{"attribute": "x", "operator": "LIKE", "value": 1}]}}]), "unknown operator"),
            (flag(rules=[{"value": 2, "conditions": {"type": "XOR", "conditions": []}}]), "unknown rule node type"),
        ]
        for config, msg in cases:
            with self.subTest(msg):
                with self.assertRaisesRegex(ValueError, msg):
                    CompiledConfig.from_dict(config)


class TestConfiguration(unittest.TestCase):
    def test_defaults(self):
        c = Configuration()
        self.assertEqual(c.backend, "remote")
        self.assertEqual(c.cache_ttl_seconds, 60)
        self.assertEqual(c.cache_namespace, "subflag")
        self.assertFalse(c.logging_enabled)
        self.assertEqual(c.log_level, "debug")

    def test_from_dict(self):
        c = Configuration.from_dict({"backend": "local", "cache_ttl_seconds": None, "logging_enabled": True, "log_level": "info"})
        self.assertEqual((c.backend, c.cache_ttl_seconds, c.logging_enabled, c.log_level), ("local", None, True, "info"))

    def test_invalid(self):
        cases = [
            {"backend": "active_record"},
            {"cache_ttl_seconds": 0},
            {"cache_ttl_seconds": "60"},
            {"cache_namespace": ""},
            {"log_level": "trace"},
            {"unknown": 1},
        ]
        for d in cases:
            with self.subTest(d):
                with self.assertRaises(ValidationError):
                    Configuration.from_dict(d)
        with self.assertRaisesRegex(ValueError, "Invalid backend"):
            Configuration(backend="redis")  # type: ignore[arg-type]
