import os

import django


# This function adds command line options to pytest.
def pytest_addoption(parser):
    parser.addoption(
        "--database",
        choices=["sqlite", "psql", "mysql"],
        default=None,
        help="Database backend to run the tests against (default: sqlite)",
    )


def pytest_report_header(config):
    return "Django: " + django.get_version()


# This function configures pytest with the provided options.
def pytest_configure(config):
    database = config.getoption("database")
    if database:
        os.environ["DATABASE_ENGINE"] = database

    # Setup django after processing the pytest arguments so that the env
    # variables are available in the settings
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "nestedset.tests.settings")
    django.setup()
