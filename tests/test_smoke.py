import server


EXPECTED_EXPORTS = (
    "create_app",
    "main",
    "load_env",
    "setup_logging",
    "load_config",
)


def test_import_server() -> None:
    for name in EXPECTED_EXPORTS:
        assert hasattr(server, name)
