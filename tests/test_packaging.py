import re
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]


def test_readme_is_project_readme():
    pyproject = (ROOT / 'pyproject.toml').read_text()
    readme = re.search(r'^readme = "(.+)"$', pyproject, re.MULTILINE).group(1)

    assert readme == 'README.md'
    assert (ROOT / readme).read_text().startswith('# sci-proximity')
