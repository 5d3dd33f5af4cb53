from juryapp.identity import fnv1a_32, make_identity, normalize, resolve


class TestNormalize:
    def test_case_and_whitespace(self) -> None:
        assert normalize("  Alice   SMITH ") == "alice smith"

    def test_diacritics_fold(self) -> None:
        assert normalize("Çağrı Öztürk") == "cagri ozturk"
        assert normalize("Łukasz Straße") == "lukasz strasse"

    def test_punctuation_is_a_separator(self) -> None:
        assert normalize("O'Neil-Smith, J.") == "o neil smith j"

    def test_none_is_empty(self) -> None:
        assert normalize(None) == ""


class TestResolve:
    def test_known_fnv_vectors(self) -> None:
        assert fnv1a_32(b"") == 0x811C9DC5
        assert fnv1a_32(b"a") == 0xE40C292C
        assert fnv1a_32(b"foobar") == 0xBF9CF968

    def test_format(self) -> None:
        jid = resolve("Alice", "EE")
        assert jid.startswith("j1-")
        assert len(jid) == 11
        int(jid[3:], 16)

    def test_same_person_different_typing(self) -> None:
        assert resolve("Çağrı Öztürk", "EE Dept.") == resolve("cagri  OZTURK", "ee dept")

    def test_organization_matters(self) -> None:
        assert resolve("Alice", "EE") != resolve("Alice", "ME")

    def test_fields_do_not_bleed(self) -> None:
        assert resolve("Alice Smith", "EE") != resolve("Alice", "Smith EE")

    def test_make_identity_keeps_display_form(self) -> None:
        ident = make_identity("  Çağrı Öztürk ", " EE ")
        assert ident.display_name == "Çağrı Öztürk"
        assert ident.organization == "EE"
        assert ident.id == resolve("cagri ozturk", "ee")
