"""Tests for the configuration source, MOF rendering and the compile step."""

from datetime import datetime

import pytest

from gcpublish.configuration import (
    ConfigurationDocument,
    ServiceAccountResource,
    build_service_account_configuration,
    load_configuration,
)
from gcpublish.errors import ConfigError, PreconditionError
from gcpublish.mof import mof_string, render_mof
from gcpublish.steps.compile import CompileStep, descriptor_path_for


class TestServiceAccountResource:
    @pytest.mark.parametrize("name", ["svc-app", "svc_app01", "a" * 20])
    def test_valid_names(self, name):
        ServiceAccountResource(account_name=name).validate()

    @pytest.mark.parametrize("name", ["", "   ", "a" * 21, "svc@app", "dom\\svc", "a/b", "x*y", "a[1]"])
    def test_invalid_names(self, name):
        with pytest.raises(ConfigError):
            ServiceAccountResource(account_name=name).validate()

    def test_invalid_ensure(self):
        with pytest.raises(ConfigError, match="Present or Absent"):
            ServiceAccountResource(account_name="svc", ensure="Maybe").validate()


class TestConfigurationDocument:
    def test_build_validates(self):
        with pytest.raises(ConfigError):
            build_service_account_configuration("bad:name")

    def test_name_must_be_identifier(self):
        document = ConfigurationDocument("Service Account", resources=[ServiceAccountResource("svc")])
        with pytest.raises(ConfigError, match="alphanumeric"):
            document.validate()

    def test_needs_resources(self):
        with pytest.raises(ConfigError, match="declares no resources"):
            ConfigurationDocument("Check").validate()

    def test_duplicate_resource_names(self):
        document = ConfigurationDocument(
            "Check", resources=[ServiceAccountResource("a"), ServiceAccountResource("b")]
        )
        with pytest.raises(ConfigError, match="Duplicate resource name"):
            document.validate()

    @pytest.mark.parametrize("node_name", ["../../x", "web\\01", "..", "."])
    def test_node_name_must_not_be_a_path(self, node_name):
        with pytest.raises(ConfigError, match="path separators"):
            build_service_account_configuration("svc-app", node_name=node_name)


class TestLoadConfiguration:
    def test_loads_yaml(self, tmp_path):
        path = tmp_path / "accounts.yaml"
        path.write_text(
            "name: Accounts\n"
            "node_name: web01\n"
            "resources:\n"
            "  - account_name: svc-web\n"
            "  - account_name: svc-old\n"
            "    ensure: Absent\n"
        )

        document = load_configuration(path)

        assert document.name == "Accounts"
        assert document.node_name == "web01"
        assert [r.resource_name for r in document.resources] == ["ServiceAccount", "ServiceAccount2"]
        assert document.resources[1].ensure == "Absent"

    def test_missing_file(self, tmp_path):
        with pytest.raises(PreconditionError, match="not found"):
            load_configuration(tmp_path / "missing.yaml")

    def test_resource_without_account_name(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("name: Bad\nresources:\n  - ensure: Present\n")
        with pytest.raises(ConfigError, match="missing account_name"):
            load_configuration(path)

    @pytest.mark.parametrize("content,message", [
        ("- account_name: svc\n", "mapping at the top level"),
        ("just-a-string\n", "mapping at the top level"),
        ("name: Bad\nresources: svc-app\n", "resources must be a list"),
        ("name: Bad\nresources:\n  - svc-app\n", "resource #1 must be a mapping"),
    ])
    def test_malformed_shape(self, tmp_path, content, message):
        path = tmp_path / "bad.yaml"
        path.write_text(content)
        with pytest.raises(ConfigError, match=message):
            load_configuration(path)


class TestRenderMof:
    def _render(self, document):
        return render_mof(
            document,
            generated_by="operator",
            generation_host="BUILD01",
            generation_date=datetime(2024, 3, 1, 12, 30, 0),
        )

    def test_header_targets_node(self):
        mof = self._render(build_service_account_configuration("svc-app", node_name="web01"))
        assert "@TargetNode='web01'" in mof
        assert "@GenerationDate=03/01/2024 12:30:00" in mof

    def test_user_resource_block(self):
        mof = self._render(build_service_account_configuration("svc-app"))

        assert "instance of MSFT_UserResource as $MSFT_UserResource1ref" in mof
        assert 'UserName = "svc-app";' in mof
        assert 'Ensure = "Present";' in mof
        assert "Disabled = False;" in mof
        assert 'ModuleName = "PSDscResources";' in mof
        assert 'ConfigurationName = "ServiceAccountCheck";' in mof

    def test_ends_with_configuration_document(self):
        mof = self._render(build_service_account_configuration("svc-app"))
        tail = mof[mof.index("instance of OMI_ConfigurationDocument"):]
        assert 'Name="ServiceAccountCheck";' in tail
        assert mof.endswith("\n")

    def test_string_escaping(self):
        assert mof_string('a"b\\c') == '"a\\"b\\\\c"'


class TestCompileStep:
    def test_writes_one_descriptor_named_after_node(self, tmp_path):
        document = build_service_account_configuration("svc-app", node_name="web01")

        result = CompileStep(document, tmp_path).run()

        assert result.descriptor_path == tmp_path / "ServiceAccountCheck" / "web01.mof"
        assert [p.name for p in (tmp_path / "ServiceAccountCheck").iterdir()] == ["web01.mof"]
        assert "svc-app" in result.descriptor_path.read_text(encoding="utf-8")

    def test_stale_descriptors_removed(self, tmp_path):
        target = tmp_path / "ServiceAccountCheck"
        target.mkdir()
        (target / "oldnode.mof").write_text("stale")

        CompileStep(build_service_account_configuration("svc-app"), tmp_path).run()

        assert sorted(p.name for p in target.glob("*.mof")) == ["localhost.mof"]

    def test_invalid_document_fails_before_writing(self, tmp_path):
        document = ConfigurationDocument("Check", resources=[ServiceAccountResource("bad|name")])

        with pytest.raises(ConfigError):
            CompileStep(document, tmp_path).run()
        assert not (tmp_path / "Check").exists()

    def test_node_name_cannot_escape_output_root(self, tmp_path):
        document = ConfigurationDocument("Check", node_name="../../x", resources=[ServiceAccountResource("svc")])

        with pytest.raises(ConfigError):
            CompileStep(document, tmp_path / "out").run()
        assert not (tmp_path / "x.mof").exists()

    def test_output_root_must_be_directory(self, tmp_path):
        output_root = tmp_path / "file"
        output_root.write_text("")

        with pytest.raises(PreconditionError, match="not a directory"):
            CompileStep(build_service_account_configuration("svc-app"), output_root).run()

    def test_descriptor_path_for(self, tmp_path):
        assert descriptor_path_for(tmp_path, "Check", "localhost") == tmp_path / "Check" / "localhost.mof"
