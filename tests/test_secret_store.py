"""
Secret Store Tests
Encryption at rest for order passwords
"""

import pytest
from cryptography.fernet import Fernet, InvalidToken

from services import secret_store
from services.secret_store import FERNET_PREFIX, FernetSecretStore, PlaintextSecretStore, get_secret_store


class TestSecretStores:

    def test_plaintext_passes_through(self):
        store = PlaintextSecretStore()
        assert store.seal('Secret-1') == 'Secret-1'
        assert store.reveal('Secret-1') == 'Secret-1'

    def test_fernet_seals_and_reveals(self):
        store = FernetSecretStore(Fernet.generate_key().decode())
        sealed = store.seal('Str0ng-Password-For-VM!')
        assert sealed.startswith(FERNET_PREFIX)
        assert 'Str0ng' not in sealed
        assert store.reveal(sealed) == 'Str0ng-Password-For-VM!'
        assert store.seal(None) is None

    def test_fernet_reads_legacy_plaintext_rows(self):
        store = FernetSecretStore(Fernet.generate_key())
        assert store.reveal('legacy-password') == 'legacy-password'

    def test_wrong_key_raises(self):
        sealed = FernetSecretStore(Fernet.generate_key()).seal('Secret-1')
        with pytest.raises(InvalidToken):
            FernetSecretStore(Fernet.generate_key()).reveal(sealed)

    @pytest.mark.parametrize("key, expected", [(None, 'plaintext'), ('generate', 'fernet')])
    def test_store_selected_from_environment(self, monkeypatch, key, expected):
        monkeypatch.setattr(secret_store, '_secret_store', None)
        if key:
            monkeypatch.setenv('ORDER_PASSWORD_KEY', Fernet.generate_key().decode())
        else:
            monkeypatch.delenv('ORDER_PASSWORD_KEY', raising=False)
        assert get_secret_store().name == expected
