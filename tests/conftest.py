from __future__ import annotations

from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from fakes import GROUP, IDENTITY, KEY_NAME, OWNER_ID, REGION, FakeProvider, FakeShellFactory, RecordingUserData
from salter.cache import ResourceCache
from salter.keys import compute_fingerprint, write_private_key
from salter.node import LifecycleSettings, NodeLifecycle
from salter.types import FirewallGroup


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def key_dir(tmp_path: Path, rsa_key: rsa.RSAPrivateKey) -> Path:
    directory = tmp_path / "keys"
    write_private_key(directory / f"{KEY_NAME}.pem", rsa_key)
    return directory


@pytest.fixture
def provider(rsa_key: rsa.RSAPrivateKey) -> FakeProvider:
    return FakeProvider(
        region=REGION,
        key_pairs=[(KEY_NAME, compute_fingerprint(rsa_key, "md5"))],
        groups=[FirewallGroup(name=GROUP, region=REGION, group_id="sg-default", owner_id=OWNER_ID)],
    )


@pytest.fixture
def cache(provider: FakeProvider, key_dir: Path) -> ResourceCache:
    return ResourceCache(lambda region: provider, key_dir)


@pytest.fixture
def shells() -> FakeShellFactory:
    return FakeShellFactory()


@pytest.fixture
def user_data() -> RecordingUserData:
    return RecordingUserData()


@pytest.fixture
def lifecycle(
    cache: ResourceCache,
    user_data: RecordingUserData,
    shells: FakeShellFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> NodeLifecycle:
    monkeypatch.setattr("salter.node.generate_identity", lambda: IDENTITY)
    return NodeLifecycle(
        cache,
        user_data,
        LifecycleSettings(ssh_username="ubuntu", poll_interval=0, shell_attempts=3),
        shell_factory=shells,
    )

