"""Test fakes and the pytest suite."""
