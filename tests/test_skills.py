import pytest

from skillrun.skills import (
    FileSystemSkillRegistry,
    SkillBuildSpec,
    SkillManifest,
    SkillProfileManifest,
    SkillRegistryError,
    validate_manifest,
)

FULL_MANIFEST = """
schema_version: 1
skill:
  name: orchestration
  version: 0.1.0
  description: Build workflows.
defaults:
  instructions:
    source: SKILL.md
profiles:
  - name: orchestration-default
    default: true
    runtime:
      kind: wasm-component
      wasm:
        wit:
          path: world.wit
          world: orchestration-default
        artifacts:
          dir: build/orchestration-default
        build:
          tool: componentize-py
          module: app
    capabilities:
      - memory
      - system
"""

MINIMAL_MANIFEST = """
schema_version: 1
skill:
  name: orchestration
  version: 0.1.0
  description: Build workflows.
profiles:
  - name: orchestration-default
    default: true
    runtime:
      kind: wasm-component
      wasm:
        wit:
          path: world.wit
          world: orchestration-default
        artifacts:
          dir: build/orchestration-default
"""

TWO_PROFILES = """
schema_version: 1
skill:
  name: multi
  version: 2.0.0
profiles:
  - name: first
    runtime:
      kind: native
  - name: second
    runtime:
      kind: native
    capabilities: [sqlite]
"""


def _write_skill(root, name, text, file_name="skill.yaml"):
    skill_root = root / name
    skill_root.mkdir(parents=True, exist_ok=True)
    (skill_root / file_name).write_text(text, encoding="utf-8")
    return skill_root


def test_loads_default_profile_from_filesystem_bundle(tmp_path):
    skill_root = tmp_path / "orchestration"
    (skill_root / "build/orchestration-default").mkdir(parents=True)
    (skill_root / "SKILL.md").write_text("# Orchestration")
    (skill_root / "world.wit").write_text("package test:skill;")
    (skill_root / "skill.yaml").write_text(FULL_MANIFEST)

    profile = FileSystemSkillRegistry(tmp_path).load_profile("orchestration", None)

    assert profile.skill_name == "orchestration"
    assert profile.profile_name == "orchestration-default"
    assert profile.runtime_kind == "wasm-component"
    assert profile.instructions_path == skill_root / "SKILL.md"
    assert profile.artifact_dir == skill_root / "build/orchestration-default"
    assert profile.wasm.world == "orchestration-default"
    assert profile.wasm.wit_path == skill_root / "world.wit"
    assert profile.build == SkillBuildSpec(tool="componentize-py", module="app")
    assert profile.capabilities == ["memory", "system"]
    assert profile.bundle_root == skill_root


def test_lists_installed_skill_bundles(tmp_path):
    _write_skill(tmp_path, "orchestration", MINIMAL_MANIFEST)

    skills = FileSystemSkillRegistry(tmp_path).list_skills()

    assert len(skills) == 1
    assert skills[0].name == "orchestration"
    assert skills[0].version == "0.1.0"
    assert skills[0].profile_count == 1


def test_list_skills_sorted_and_ignores_files(tmp_path):
    _write_skill(tmp_path, "zeta", TWO_PROFILES)
    _write_skill(tmp_path, "alpha", MINIMAL_MANIFEST)
    (tmp_path / "notes.txt").write_text("ignored")

    names = [skill.name for skill in FileSystemSkillRegistry(tmp_path).list_skills()]

    assert names == ["multi", "orchestration"]


def test_list_skills_of_missing_root_is_empty(tmp_path):
    assert FileSystemSkillRegistry(tmp_path / "absent").list_skills() == []


def test_without_default_first_profile_is_chosen(tmp_path):
    _write_skill(tmp_path, "multi", TWO_PROFILES, file_name="skill.yml")

    profile = FileSystemSkillRegistry(tmp_path).load_profile("multi")

    assert profile.profile_name == "first"
    assert profile.instructions_path is None
    assert profile.wasm is None
    assert profile.artifact_dir is None


def test_named_profile_is_selected(tmp_path):
    _write_skill(tmp_path, "multi", TWO_PROFILES)

    profile = FileSystemSkillRegistry(tmp_path).load_profile("multi", "second")

    assert profile.profile_name == "second"
    assert profile.capabilities == ["sqlite"]


def test_unknown_profile_is_rejected(tmp_path):
    _write_skill(tmp_path, "multi", TWO_PROFILES)

    with pytest.raises(SkillRegistryError, match="profile 'third' not found for skill 'multi'"):
        FileSystemSkillRegistry(tmp_path).load_profile("multi", "third")


def test_missing_manifest_is_rejected(tmp_path):
    (tmp_path / "empty").mkdir()

    with pytest.raises(SkillRegistryError, match="no skill manifest found"):
        FileSystemSkillRegistry(tmp_path).load_skill("empty")


def test_load_skill_returns_manifest_path(tmp_path):
    skill_root = _write_skill(tmp_path, "orchestration", MINIMAL_MANIFEST)

    bundle = FileSystemSkillRegistry(tmp_path).load_skill("orchestration")

    assert bundle.manifest_path == skill_root / "skill.yaml"
    assert bundle.manifest.description == "Build workflows."


def _manifest(**overrides):
    values = {
        "schema_version": 1,
        "name": "skill",
        "version": "1.0.0",
        "profiles": [SkillProfileManifest(name="p", runtime_kind="native")],
    }
    values.update(overrides)
    return SkillManifest(**values)


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"schema_version": 2}, "unsupported skill schema version 2"),
        ({"name": "  "}, "skill name cannot be empty"),
        ({"profiles": []}, "skill must define at least one profile"),
        (
            {
                "profiles": [
                    SkillProfileManifest(name="a", runtime_kind="native", default=True),
                    SkillProfileManifest(name="b", runtime_kind="native", default=True),
                ]
            },
            "cannot declare more than one default profile",
        ),
        (
            {"profiles": [SkillProfileManifest(name=" ", runtime_kind="native")]},
            "profile name cannot be empty",
        ),
        (
            {"profiles": [SkillProfileManifest(name="w", runtime_kind="wasm-component")]},
            "profile 'w' declares wasm-component runtime without wasm config",
        ),
    ],
)
def test_validate_manifest_errors(overrides, message):
    with pytest.raises(SkillRegistryError, match=message):
        validate_manifest(_manifest(**overrides))


def test_manifest_from_dict_requires_profiles():
    with pytest.raises(SkillRegistryError, match="profiles"):
        SkillManifest.from_dict({"schema_version": 1, "skill": {"name": "x", "version": "1"}})


def test_manifest_from_dict_reads_defaults():
    manifest = SkillManifest.from_dict(
        {
            "schema_version": 1,
            "skill": {"name": "x", "version": "1"},
            "defaults": {"instructions": {"source": "SKILL.md"}, "databases": ["main"]},
            "profiles": [{"name": "p", "runtime": {"kind": "native"}}],
        }
    )

    assert manifest.instructions_source == "SKILL.md"
    assert manifest.databases == ["main"]
    assert manifest.profiles[0].default is False