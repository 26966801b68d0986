"""
Tests for output descriptors and BIP44/49/84 templates.
"""

import pytest

from descwallet.errors import DescriptorSyntaxError, InvalidNetworkError, NotDerivableError
from descwallet.models import KeychainKind, Network
from descwallet.wallet.derivation import DerivationPath
from descwallet.wallet.descriptor import Descriptor, ScriptType, add_checksum, descriptor_checksum
from descwallet.wallet.keys import DescriptorSecretKey
from descwallet.wallet.mnemonic import Mnemonic
from descwallet.wallet.service import Wallet
from descwallet.wallet.templates import (
    new_bip44,
    new_bip44_public,
    new_bip49,
    new_bip49_public,
    new_bip84,
    new_bip84_public,
)

from conftest import SINGLE_KEY_DESCRIPTOR

TESTNET_XPRV_DESCRIPTOR = (
    "wpkh(tprv8hwWMmPE4BVNxGdVt3HhEERZhondQvodUY7Ajyseyhudr4WabJqWKWLr4Wi2r26CDaNCQhhxEftEaNzz7d"
    "PGhWuKFU4VULesmhEfZYyBXdE/0/*)"
)

ABANDON_MNEMONIC = "abandon " * 11 + "about"

HANDMADE_PUBLIC = {
    44: "[d1d04177/44'/1'/0']tpubDCoPjomfTqh1e7o1WgGpQtARWtkueXQAepTeNpWiitS3Sdv8RKJ1yvTrGHcwjDXp2S"
    "KyMrTEca4LoN7gEUiGCWboyWe2rz99Kf4jK4m2Zmx",
    49: "[d1d04177/49'/1'/0']tpubDC65ZRvk1NDddHrVAUAZrUPJ772QXzooNYmPywYF9tMyNLYKf5wpKE7ZJvK9kvfG3F"
    "V7rCsHBNXy1LVKW95jrmC7c7z4hq7a27aD2sRrAhR",
    84: "[d1d04177/84'/1'/0']tpubDDNxbq17egjFk2edjv8oLnzxk52zny9aAYNv9CMqTzA4mQDiQq818sEkNe9Gzmd4QU"
    "8558zftqbfoVBDQorG3E4Wq26tB2JeE4KUoahLkx6",
}


class TestChecksum:
    def test_known_checksum(self):
        assert descriptor_checksum("raw(deadbeef)") == "89f8spxm"

    def test_add_checksum(self):
        assert add_checksum("raw(deadbeef)") == "raw(deadbeef)#89f8spxm"

    def test_invalid_character(self):
        with pytest.raises(DescriptorSyntaxError):
            descriptor_checksum("wpkh(é)")


class TestDescriptorParsing:
    def test_parse_testnet(self):
        descriptor = Descriptor.new(TESTNET_XPRV_DESCRIPTOR, Network.TESTNET)
        assert descriptor.script_type is ScriptType.WPKH
        assert descriptor.has_wildcard
        assert descriptor.secret_key is not None

    def test_network_mismatch(self):
        with pytest.raises(InvalidNetworkError):
            Descriptor.new(TESTNET_XPRV_DESCRIPTOR, Network.BITCOIN)

    def test_wallet_rejects_network_mismatch(self):
        descriptor = Descriptor.new(TESTNET_XPRV_DESCRIPTOR, Network.TESTNET)
        with pytest.raises(InvalidNetworkError):
            Wallet(descriptor, None, Network.BITCOIN)

    def test_signet_and_regtest_accept_testnet_keys(self):
        for network in (Network.SIGNET, Network.REGTEST):
            assert Descriptor.new(TESTNET_XPRV_DESCRIPTOR, network).network is network

    def test_public_string_hides_secret(self):
        descriptor = Descriptor.new(TESTNET_XPRV_DESCRIPTOR, Network.TESTNET)
        public = descriptor.as_string()
        assert "tprv" not in public
        assert public.startswith("wpkh(")
        assert "#" in public

    def test_private_string_roundtrips(self):
        descriptor = Descriptor.new(TESTNET_XPRV_DESCRIPTOR, Network.TESTNET)
        private = descriptor.as_string_private()
        assert private.split("#")[0] == TESTNET_XPRV_DESCRIPTOR
        reparsed = Descriptor.new(private, Network.TESTNET)
        assert reparsed.address_at(5) == descriptor.address_at(5)

    def test_public_descriptor_addresses_match(self):
        descriptor = Descriptor.new(TESTNET_XPRV_DESCRIPTOR, Network.TESTNET)
        watch_only = Descriptor.new(descriptor.as_string(), Network.TESTNET)
        assert watch_only.secret_key is None
        assert watch_only.key_map == {}
        assert list(descriptor.key_map.values()) == [descriptor.secret_key]
        assert [watch_only.address_at(i) for i in range(3)] == [
            descriptor.address_at(i) for i in range(3)
        ]

    def test_bad_checksum(self):
        descriptor = Descriptor.new(TESTNET_XPRV_DESCRIPTOR, Network.TESTNET).as_string()
        body, _, checksum = descriptor.partition("#")
        tampered = body + "#" + ("q" if checksum[0] != "q" else "p") + checksum[1:]
        with pytest.raises(DescriptorSyntaxError):
            Descriptor.new(tampered, Network.TESTNET)

    @pytest.mark.parametrize(
        "text",
        [
            "tr(tprv8ZgxMBicQKsPdWuqM1t1CDRvQtQuBPyfL6GbhQwtxDKgUAVPbxmj71pRA8raTqLrec5LyTs5Tq"
            "CxdABc"
            "Zr77bt2KyWA5bizJHnC4g4ysm4h/*)",
            "sh(pkh(cVpPVruEDdmutPzisEsYvtST1usBR3ntr8pXSyt6D2YYqXRyPcFW))",
            "wpkh(notakey)",
            "wpkh(cVpPVruEDdmutPzisEsYvtST1usBR3ntr8pXSyt6D2YYqXRyPcFW",
        ],
    )
    def test_unsupported_or_malformed(self, text):
        with pytest.raises(DescriptorSyntaxError):
            Descriptor.new(text, Network.TESTNET)

    def test_segwit_rejects_uncompressed_key(self):
        uncompressed = (
            "0479be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
            "483ada7726a3c4655da4fbfc0e1108a8fd17b448a68554199c47d08ffb10d4b8"
        )
        with pytest.raises(DescriptorSyntaxError):
            Descriptor.new(f"wpkh({uncompressed})", Network.TESTNET)
        assert Descriptor.new(f"pkh({uncompressed})", Network.TESTNET).address_at(0)

    def test_single_key_has_one_script(self):
        descriptor = Descriptor.new(SINGLE_KEY_DESCRIPTOR, Network.TESTNET)
        assert not descriptor.has_wildcard
        assert descriptor.script_pubkey_at(0) == descriptor.script_pubkey_at(9)

    def test_sh_wpkh_redeem_script(self):
        descriptor = Descriptor.new(
            "sh(wpkh(cVpPVruEDdmutPzisEsYvtST1usBR3ntr8pXSyt6D2YYqXRyPcFW))", Network.TESTNET
        )
        assert descriptor.script_type is ScriptType.SH_WPKH
        redeem = descriptor.redeem_script_at(0)
        assert redeem is not None
        assert redeem.is_p2wpkh()
        assert descriptor.script_pubkey_at(0).is_p2sh()
        assert descriptor.address_at(0).startswith("2")

    def test_hardened_wildcard_uses_secret(self, master_key):
        text = master_key.as_string()[:-2] + "/0/*'"
        descriptor = Descriptor.new(f"wpkh({text})", Network.TESTNET)
        assert descriptor.address_at(0) != descriptor.address_at(1)

    @pytest.mark.parametrize("suffix", ["/1'/*", "/1h/0/*", "/0/*'"])
    def test_public_key_rejects_hardened_steps(self, master_key, suffix):
        public = master_key.as_public().as_string()[:-2] + suffix
        with pytest.raises(DescriptorSyntaxError):
            Descriptor.new(f"wpkh({public})", Network.TESTNET)

    def test_secret_key_allows_hardened_steps(self, master_key):
        text = master_key.as_string()[:-2] + "/1'/*"
        descriptor = Descriptor.new(f"wpkh({text})", Network.TESTNET)
        assert descriptor.address_at(0).startswith("tb1q")


class TestTemplates:
    @pytest.fixture
    def abandon_key(self) -> DescriptorSecretKey:
        return DescriptorSecretKey.new(Network.BITCOIN, Mnemonic.from_string(ABANDON_MNEMONIC))

    def test_master_key(self, abandon_key):
        assert str(abandon_key.key) == (
            "xprv9s21ZrQH143K3GJpoapnV8SFfukcVBSfeCficPSGfubmSFDxo1kuHnLisriDvSnRRuL2Qrg5ggqHKNVpxR"
            "86QEC8w35uxmGoggxtQTPvfUu"
        )

    def test_bip84_addresses(self, abandon_key):
        external = new_bip84(abandon_key, KeychainKind.EXTERNAL, Network.BITCOIN)
        internal = new_bip84(abandon_key, KeychainKind.INTERNAL, Network.BITCOIN)
        assert external.address_at(0) == "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
        assert internal.address_at(0) == "bc1q8c6fshw2dlwun7ekn9qwf37cu2rn755upcp6el"

    def test_bip44_address(self, abandon_key):
        external = new_bip44(abandon_key, KeychainKind.EXTERNAL, Network.BITCOIN)
        assert external.address_at(0) == "1LqBGSKuX5yYUonjxT5qGfpUsXKYYWeabA"

    def test_bip49_address(self):
        key = DescriptorSecretKey.new(Network.TESTNET, Mnemonic.from_string(ABANDON_MNEMONIC))
        external = new_bip49(key, KeychainKind.EXTERNAL, Network.TESTNET)
        assert external.address_at(0) == "2Mww8dCYPUpKHofjgcXcBCEGmniw9CoaiD2"

    @pytest.mark.parametrize(
        ("purpose", "private_template", "public_template", "prefix"),
        [
            (44, new_bip44, new_bip44_public, "pkh("),
            (49, new_bip49, new_bip49_public, "sh(wpkh("),
            (84, new_bip84, new_bip84_public, "wpkh("),
        ],
    )
    def test_public_template_matches_private(
        self, master_key, purpose, private_template, public_template, prefix
    ):
        handmade = master_key.derive(DerivationPath.parse(f"m/{purpose}h/1h/0h")).as_public()
        assert handmade.as_string() == HANDMADE_PUBLIC[purpose] + "/*"

        from_public = public_template(handmade, "d1d04177", KeychainKind.EXTERNAL, Network.TESTNET)
        from_private = private_template(master_key, KeychainKind.EXTERNAL, Network.TESTNET)

        expected = prefix + HANDMADE_PUBLIC[purpose] + "/0/*"
        assert from_public.as_string().startswith(expected)
        assert from_public.as_string() == from_private.as_string()
        assert from_private.as_string_private().startswith(prefix + "tprv")

    def test_internal_keychain_uses_change_branch(self, master_key):
        internal = new_bip84(master_key, KeychainKind.INTERNAL, Network.TESTNET)
        assert "/1/*" in internal.as_string()
        fingerprint, path = internal.key_source_at(4)
        assert fingerprint.hex() == "d1d04177"
        assert str(path) == "m/84'/1'/0'/1/4"

    def test_single_key_cannot_build_template(self):
        single = DescriptorSecretKey.from_string(
            "cVpPVruEDdmutPzisEsYvtST1usBR3ntr8pXSyt6D2YYqXRyPcFW"
        )
        with pytest.raises(NotDerivableError):
            new_bip84(single, KeychainKind.EXTERNAL, Network.TESTNET)

    def test_template_network_mismatch(self, master_key):
        with pytest.raises(InvalidNetworkError):
            new_bip84(master_key, KeychainKind.EXTERNAL, Network.BITCOIN)
