from click.testing import CliRunner

from config import PROJECT_ROOT, SCHEDULE
from main import cli


def test_crontab_prints_schedule_entry():
    result = CliRunner().invoke(cli, ["crontab"])

    assert result.exit_code == 0
    line = result.output.strip()
    assert line.startswith(f"{SCHEDULE['cron']} cd {PROJECT_ROOT} && ")
    assert line.endswith("main.py schedule")
