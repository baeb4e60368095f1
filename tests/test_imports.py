"""Basic import tests to catch dependency issues early."""
import importlib
import unittest


class TestImports(unittest.TestCase):
    """Test suite to verify all critical modules can be imported."""

    def test_import_all_modules(self):
        """Test that core modules can be imported without errors."""
        modules = [
            "battlehost.config.config",
            "battlehost.core.crash",
            "battlehost.core.deps",
            "battlehost.core.exit_codes",
            "battlehost.core.kernel",
            "battlehost.core.registry",
            "battlehost.net.listener",
            "battlehost.subsystems",
            "battlehost.workers.child",
            "battlehost.workers.pool",
        ]

        for module_name in modules:
            try:
                module = importlib.import_module(module_name)
                self.assertIsNotNone(module, f"Failed to import {module_name}")
            except Exception as e:
                self.fail(f"Failed to import {module_name}: {str(e)}")

    def test_lazy_package_attributes(self):
        import battlehost
        self.assertIs(battlehost.Kernel, importlib.import_module("battlehost.core.kernel").Kernel)
        with self.assertRaises(AttributeError):
            battlehost.NotAThing


if __name__ == '__main__':
    unittest.main()
