from datetime import UTC, datetime, timedelta

import pytest

from fiscal_core.certificates import CertificateBundle, CertificateState, certificate_state
from fiscal_core.exceptions import CertificateError

NOW = datetime(2026, 10, 17, tzinfo=UTC)


@pytest.mark.unit
class TestCertificateBundle:
    """PEM holder"""

    def test_rejects_non_pem(self, certificate_bundle):
        with pytest.raises(ValueError, match="cert_pem"):
            CertificateBundle("not a cert", certificate_bundle.key_pem)
        with pytest.raises(ValueError, match="key_pem"):
            CertificateBundle(certificate_bundle.cert_pem, "not a key")

    def test_repr_hides_key_material(self, certificate_bundle):
        text = repr(certificate_bundle)
        assert "PRIVATE KEY" not in text
        assert "EMPRESA TESTE LTDA" in text

    def test_validity(self, certificate_bundle):
        future = CertificateBundle(
            certificate_bundle.cert_pem,
            certificate_bundle.key_pem,
            valid_to=NOW + timedelta(days=30),
        )
        past = CertificateBundle(
            certificate_bundle.cert_pem,
            certificate_bundle.key_pem,
            valid_to=NOW - timedelta(days=1),
        )

        assert certificate_bundle.is_valid(NOW) is True
        assert certificate_bundle.days_until_expiration(NOW) is None
        assert future.is_valid(NOW) is True
        assert future.days_until_expiration(NOW) == 30
        assert past.is_valid(NOW) is False

    def test_from_pem_files(self, tmp_path, certificate_bundle):
        cert = tmp_path / "cert.pem"
        key = tmp_path / "key.pem"
        cert.write_text(certificate_bundle.cert_pem, encoding="utf-8")
        key.write_text(certificate_bundle.key_pem, encoding="utf-8")

        bundle = CertificateBundle.from_pem_files(cert, key, subject="X")

        assert bundle.cert_pem == certificate_bundle.cert_pem
        assert bundle.subject == "X"

    def test_from_missing_file(self, tmp_path):
        with pytest.raises(CertificateError, match="não encontrado"):
            CertificateBundle.from_pem_files(tmp_path / "a.pem", tmp_path / "b.pem")


@pytest.mark.unit
class TestCertificateState:
    """Explicit process-scoped holder"""

    def test_lifecycle(self, certificate_bundle):
        state = CertificateState()
        assert state.current() is None and not state.is_loaded()

        state.init(certificate_bundle)
        assert state.current() is certificate_bundle
        assert state.require() is certificate_bundle

        state.clear()
        assert state.current() is None

    def test_require_without_certificate(self):
        with pytest.raises(CertificateError) as exc_info:
            CertificateState().require()
        assert exc_info.value.suggestions

    def test_require_with_expired_certificate(self, certificate_bundle):
        state = CertificateState()
        state.init(
            CertificateBundle(
                certificate_bundle.cert_pem,
                certificate_bundle.key_pem,
                valid_to=datetime(2000, 1, 1, tzinfo=UTC),
            )
        )

        with pytest.raises(CertificateError, match="expirou"):
            state.require()

    def test_module_state_is_reset_between_tests(self):
        assert certificate_state.current() is None
