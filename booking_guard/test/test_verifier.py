from booking_guard.verifier import StaticCodeVerifier, normalize_code


class TestStaticCodeVerifier:
    """Test suite for StaticCodeVerifier"""

    def test_normalize_code(self):
        assert normalize_code("  abc-123\n") == "ABC-123"

    def test_matching_code(self):
        verifier = StaticCodeVerifier({42: "abc-123"})
        assert verifier("42", "ABC-123") == True
        assert verifier("42", " abc-123 ") == True

    def test_wrong_code(self):
        verifier = StaticCodeVerifier({"42": "ABC-123"})
        assert verifier("42", "ABC-124") == False

    def test_unknown_subject(self):
        verifier = StaticCodeVerifier({"42": "ABC-123"})
        assert verifier("7", "ABC-123") == False

    def test_empty_mapping(self):
        assert StaticCodeVerifier()("42", "ABC-123") == False
