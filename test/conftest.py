import pytest


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--runintegration",
        action="store_true",
        default=False,
        help="run tests that query public registries or need native package manager tools",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "integration: needs network access or native tooling (pipenv, cargo, go)")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if config.getoption("--runintegration"):
        return
    skip_integration = pytest.mark.skip(reason="needs network access; pass --runintegration")
    for item in (i for i in items if "integration" in i.keywords):
        item.add_marker(skip_integration)
