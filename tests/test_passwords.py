def test_hash_and_match(hasher):
    digest = hasher.hash("correct horse battery staple")
    assert digest.startswith("$argon2id$")
    assert hasher.matches("correct horse battery staple", digest)
    assert not hasher.matches("Correct horse battery staple", digest)


def test_same_password_hashes_differently(hasher):
    assert hasher.hash("pw") != hasher.hash("pw")


def test_unreadable_digest_is_a_mismatch(hasher):
    assert hasher.matches("pw", "not-an-argon2-hash") is False
    assert hasher.matches("pw", "") is False
