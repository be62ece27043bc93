import importlib


def test_import_package():
    """Basic smoke test: can import the package and check version."""
    pkg = importlib.import_module("soc_scenarios")

    assert hasattr(pkg, "__version__")
    assert pkg.__version__.startswith("0.")


def test_import_functions():
    """Check that key functions are exposed at top-level."""
    import soc_scenarios as ss

    assert hasattr(ss, "__version__")
    assert hasattr(ss, "__author__")
    assert callable(ss.run_pipeline)
    assert issubclass(ss.ConfigurationError, ss.SocModelError)
    assert issubclass(ss.MissingCombinationError, ss.SocModelError)
