"""
Tests for the deployment ledger.
"""

import os

import pytest

from rigger.ledger import Ledger, quote, unquote


class TestLedgerFile:
    """Test reading and writing the shell-sourceable ledger."""

    def test_upsert_persists_sections_and_aliases(self, tmp_path):
        """Test that an entry is written as a section with prefixed variables and aliases."""
        path = tmp_path / "deployment-info.txt"
        ledger = Ledger(path)
        ledger.upsert(
            "k8s-kubeadm-master",
            {"kind": "Instance", "instance_id": "i-123", "public_ip": "54.1.2.3"},
            aliases={"public_ip": "MASTER_PUBLIC_IP", "instance_id": "MASTER_INSTANCE_ID"},
        )

        text = path.read_text()
        assert "# [k8s-kubeadm-master]" in text
        assert 'export K8S_KUBEADM_MASTER_PUBLIC_IP="54.1.2.3"' in text
        assert 'export MASTER_PUBLIC_IP="${K8S_KUBEADM_MASTER_PUBLIC_IP}"' in text

        reloaded = Ledger.load(path)
        assert reloaded.get("k8s-kubeadm-master") == {
            "kind": "Instance", "instance_id": "i-123", "public_ip": "54.1.2.3",
        }
        assert reloaded.environment()["MASTER_PUBLIC_IP"] == "54.1.2.3"

    def test_last_write_wins(self, tmp_path):
        """Test that upsert replaces the whole entry."""
        ledger = Ledger(tmp_path / "ledger.txt")
        ledger.upsert("regcred", {"kind": "K8sSecret", "created_at": "old", "server": "a"})
        ledger.upsert("regcred", {"kind": "K8sSecret", "created_at": "new"})

        assert Ledger.load(ledger.path).get("regcred") == {"kind": "K8sSecret", "created_at": "new"}

    def test_missing_file_is_empty(self, tmp_path):
        """Test loading a ledger that was never written."""
        ledger = Ledger.load(tmp_path / "absent.txt")
        assert ledger.snapshot() == {}
        assert ledger.get("anything") is None

    def test_remove(self, tmp_path):
        """Test removing entries, including unknown ones."""
        ledger = Ledger(tmp_path / "ledger.txt")
        ledger.upsert("k8s-kubeadm-sg", {"kind": "SecurityGroup", "group_id": "sg-1"},
                      aliases={"group_id": "SECURITY_GROUP_ID"})
        ledger.remove("k8s-kubeadm-sg")
        ledger.remove("never-recorded")

        reloaded = Ledger.load(ledger.path)
        assert reloaded.get("k8s-kubeadm-sg") is None
        assert "SECURITY_GROUP_ID" not in reloaded.environment()

    def test_unmanaged_variables_survive(self, tmp_path):
        """Test that hand-written exports outside sections are kept."""
        path = tmp_path / "deployment-info.txt"
        path.write_text(
            "# written by hand\n"
            'export AWS_ACCOUNT_ID="123456789012"\n'
            "\n"
            "# [retail-store-ui]\n"
            'export RETAIL_STORE_UI_KIND="EcrRepository"\n'
            'export RETAIL_STORE_UI_REGISTRY="123456789012.dkr.ecr.us-east-1.amazonaws.com"\n'
            'export ECR_REGISTRY="${RETAIL_STORE_UI_REGISTRY}"\n'
        )

        ledger = Ledger.load(path)
        ledger.upsert("retail-store-catalog", {"kind": "EcrRepository"})

        reloaded = Ledger.load(path)
        env = reloaded.environment()
        assert env["AWS_ACCOUNT_ID"] == "123456789012"
        assert env["ECR_REGISTRY"] == "123456789012.dkr.ecr.us-east-1.amazonaws.com"
        assert reloaded.get("retail-store-catalog") == {"kind": "EcrRepository"}

    def test_special_characters_are_quoted(self, tmp_path):
        """Test that values with shell metacharacters round-trip."""
        ledger = Ledger(tmp_path / "ledger.txt")
        password = 'p@ss"$HOME`x\\y'
        ledger.upsert("argocd", {"kind": "HelmRelease", "admin_password": password},
                      aliases={"admin_password": "ARGOCD_ADMIN_PASSWORD"})

        reloaded = Ledger.load(ledger.path)
        assert reloaded.get("argocd")["admin_password"] == password
        assert reloaded.environment()["ARGOCD_ADMIN_PASSWORD"] == password

    def test_invalid_attribute_name_rejected(self, tmp_path):
        """Test that attribute names must be snake_case."""
        ledger = Ledger(tmp_path / "ledger.txt")
        with pytest.raises(ValueError, match="Invalid ledger attribute"):
            ledger.upsert("x", {"Public-IP": "1.2.3.4"})

    def test_writes_leave_no_temporary_files(self, tmp_path):
        """Test that the atomic replace cleans up after itself."""
        ledger = Ledger(tmp_path / "ledger.txt")
        for i in range(3):
            ledger.upsert(f"repo-{i}", {"kind": "EcrRepository"})
        ledger.set_unmanaged("APP_URL", "http://54.1.2.3:30080")

        assert os.listdir(tmp_path) == ["ledger.txt"]

    def test_line_breaks_rejected(self, tmp_path):
        """Test that a value which could not be read back is refused before anything is written."""
        ledger = Ledger(tmp_path / "ledger.txt")
        ledger.upsert("k8s-kubeadm-key", {"kind": "KeyPair", "key_name": "k8s-kubeadm-key"})

        with pytest.raises(ValueError, match="line break"):
            ledger.upsert("k8s-kubeadm-key", {"kind": "KeyPair", "fingerprint": "ab:cd\nexport X=1"})
        with pytest.raises(ValueError, match="line break"):
            ledger.set_unmanaged("APP_URL", "http://a\r\n")

        reloaded = Ledger.load(ledger.path)
        assert reloaded.get("k8s-kubeadm-key") == {"kind": "KeyPair", "key_name": "k8s-kubeadm-key"}
        assert "X" not in reloaded.environment()


class TestAtomicWrite:
    """Test that a failed write never damages the committed ledger."""

    def test_crash_during_rename_keeps_previous_entries(self, tmp_path, monkeypatch):
        """Test an interrupted upsert: earlier entries load back unchanged and no temp file is left."""
        path = tmp_path / "deployment-info.txt"
        ledger = Ledger(path)
        ledger.upsert("k8s-kubeadm-sg", {"kind": "SecurityGroup", "group_id": "sg-1"},
                      aliases={"group_id": "SECURITY_GROUP_ID"})
        committed = path.read_text()

        def crash(src, dst):
            raise OSError("No space left on device")

        monkeypatch.setattr("rigger.ledger.os.replace", crash)
        with pytest.raises(OSError):
            ledger.upsert("k8s-kubeadm-master", {"kind": "Instance", "instance_id": "i-123"})

        assert path.read_text() == committed
        reloaded = Ledger.load(path)
        assert reloaded.snapshot() == {"k8s-kubeadm-sg": {"kind": "SecurityGroup", "group_id": "sg-1"}}
        assert reloaded.environment()["SECURITY_GROUP_ID"] == "sg-1"
        assert os.listdir(tmp_path) == ["deployment-info.txt"]

    def test_crash_while_rendering_keeps_previous_entries(self, tmp_path, monkeypatch):
        """Test a failure before any byte reaches the temporary file."""
        path = tmp_path / "deployment-info.txt"
        ledger = Ledger(path)
        ledger.upsert("retail-store-ui", {"kind": "EcrRepository"})

        def broken_render(self):
            raise RuntimeError("render failed")

        monkeypatch.setattr(Ledger, "render", broken_render)
        with pytest.raises(RuntimeError):
            ledger.remove("retail-store-ui")

        assert Ledger.load(path).get("retail-store-ui") == {"kind": "EcrRepository"}
        assert os.listdir(tmp_path) == ["deployment-info.txt"]


def test_quote_unquote():
    assert quote('a"b$c') == 'a\\"b\\$c'
    assert unquote(quote('x\\y`z')) == 'x\\y`z'
