"""
Unit tests for the module dependency graph
"""

import unittest
import sys
import os

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modules import MODULE_DEPENDENCIES, deployment_order, dependents_of


class TestDeploymentOrder(unittest.TestCase):
    """Test ordering of the module graph"""

    def test_default_order(self):
        self.assertEqual(deployment_order(), [
            "network", "security", "iam", "eks", "rds", "redis",
            "alb", "ecr", "logging", "policy", "vault"
        ])

    def test_every_module_after_its_dependencies(self):
        order = deployment_order()
        for name, deps in MODULE_DEPENDENCIES.items():
            for dep in deps:
                self.assertLess(order.index(dep), order.index(name), f"{dep} must precede {name}")

    def test_undeclared_dependency(self):
        with self.assertRaises(ValueError) as ctx:
            deployment_order({"eks": ("network",)})
        self.assertIn("network", str(ctx.exception))

    def test_cycle(self):
        with self.assertRaises(ValueError) as ctx:
            deployment_order({"a": ("b",), "b": ("c",), "c": ("a",), "d": ()})
        self.assertIn("cycle", str(ctx.exception))

    def test_peers_keep_declaration_order(self):
        self.assertEqual(deployment_order({"z": (), "y": (), "x": ("z",)}), ["z", "y", "x"])


class TestDependents(unittest.TestCase):
    """Test finding modules affected by a change"""

    def test_dependents_of_iam(self):
        self.assertEqual(dependents_of("iam"), ["eks", "alb", "ecr", "logging", "policy", "vault"])

    def test_leaf_module_has_no_dependents(self):
        self.assertEqual(dependents_of("vault"), [])

    def test_unknown_module(self):
        with self.assertRaises(ValueError):
            dependents_of("dns")


if __name__ == '__main__':
    unittest.main()
