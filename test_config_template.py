import shutil
import tempfile
import unittest
from pathlib import Path

from clone_database import load_clone_config
from stage_pipeline import DEFAULT_STAGE_NAMES

TEMPLATE_PATH = Path(__file__).resolve().parent / "config.ini.template"


class TestConfigTemplate(unittest.TestCase):
    def test_config_template_has_no_duplicate_keys(self):
        text = TEMPLATE_PATH.read_text(encoding="utf-8")

        section = ""
        seen = {section: set()}
        duplicates = []
        for raw_line in text.splitlines():
            line = raw_line.strip()
            if not line or line.startswith(("#", ";")):
                continue
            if line.startswith("[") and line.endswith("]"):
                section = line[1:-1].strip()
                seen.setdefault(section, set())
                continue
            if "=" not in line:
                continue
            key = line.split("=", 1)[0].strip()
            if key in seen[section]:
                duplicates.append((section, key))
            seen[section].add(key)

        self.assertEqual(duplicates, [], f"Duplicate keys found: {duplicates}")

    def test_template_loads_with_documented_defaults(self):
        with tempfile.TemporaryDirectory() as tmp:
            config_path = Path(tmp) / "config.ini"
            shutil.copyfile(TEMPLATE_PATH, config_path)
            settings = load_clone_config(config_path)

        self.assertEqual(settings.stage_names, list(DEFAULT_STAGE_NAMES))
        self.assertEqual(settings.max_passes, 10)
        self.assertEqual(settings.stage_max_passes, {"constraints": 5})
        self.assertEqual(settings.executor, "sqlcmd")
        self.assertEqual(settings.timeout, 3600)
        self.assertFalse(settings.create_database)
        self.assertEqual(settings.generator_command, "")
        self.assertEqual(settings.script_dir.name, "clone_scripts")
        self.assertEqual(settings.log_file.name, "clone_database.log")
        self.assertEqual(settings.destination_label, "target-sql01/SalesDb_Clone")


if __name__ == "__main__":
    unittest.main()
