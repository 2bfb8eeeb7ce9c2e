import allure
from click.testing import CliRunner

from agent_dispatch import __version__
from agent_dispatch.main import agent_dispatch

pytestmark = [
    allure.epic("Worker Operations"),
    allure.feature("Worker CLI"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(agent_dispatch, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
