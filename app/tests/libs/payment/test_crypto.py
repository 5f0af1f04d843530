import datetime
import hashlib
import hmac
from base64 import b64decode, b64encode

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.x509.oid import NameOID

from libs.payment.crypto import (
    KeyedHashAlgorithm,
    SignAlgorithm,
    build_canonical_string,
    constant_time_equals,
    decrypt_aes_gcm,
    keyed_hash,
    load_private_key,
    load_public_key,
    sign,
    verify_signature,
)
from libs.payment.exceptions import (
    BadKeyError,
    BadSignatureFormatError,
    DecryptionFailedError,
    TagMismatchError,
    UnsupportedAlgorithmError,
)

# 微信支付 V2 签名文档示例
DOC_PARAMS = {
    "appid": "wxd930ea5d5a258f4f",
    "mch_id": "10000100",
    "device_info": "1000",
    "body": "test",
    "nonce_str": "ibuaiVcKdpRxkhJA",
}
DOC_KEY = "192006250b4c09247ec02edce69f6a2d"

GCM_KEY = "0123456789abcdef0123456789abcdef"
GCM_NONCE = "fdasflkja484"


def _encrypt(plaintext: str, associated_data: str = "transaction") -> str:
    data = AESGCM(GCM_KEY.encode()).encrypt(GCM_NONCE.encode(), plaintext.encode(), associated_data.encode())
    return b64encode(data).decode()


def _self_signed_certificate(private_pem: str) -> str:
    key = load_private_key(private_pem)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Tenpay.com Root CA")])
    now = datetime.datetime.now(datetime.timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM).decode()


class TestCanonicalString:
    def test_sorted_and_skips_empty_values(self):
        params = {"b": "2", "a": "1", "c": "", "d": None, "sign": "ignored"}
        assert build_canonical_string(params) == "a=1&b=2"

    def test_insertion_order_does_not_matter(self):
        forward = build_canonical_string(DOC_PARAMS)
        backward = build_canonical_string(dict(reversed(list(DOC_PARAMS.items()))))
        assert forward == backward

    def test_appends_secret(self):
        canonical = build_canonical_string(DOC_PARAMS, secret=DOC_KEY)
        assert canonical == (
            "appid=wxd930ea5d5a258f4f&body=test&device_info=1000"
            "&mch_id=10000100&nonce_str=ibuaiVcKdpRxkhJA&key=192006250b4c09247ec02edce69f6a2d"
        )

    def test_custom_exclude(self):
        params = {"a": "1", "sign": "x", "sign_type": "RSA2"}
        assert build_canonical_string(params, exclude=("sign", "sign_type")) == "a=1"


class TestKeyedHash:
    def test_md5_matches_documented_vector(self):
        canonical = build_canonical_string(DOC_PARAMS, secret=DOC_KEY)
        assert keyed_hash(canonical, DOC_KEY) == "9A0A8659F005D6984697E2CA0A9CF3B7"

    def test_hmac_sha256(self):
        canonical = build_canonical_string(DOC_PARAMS, secret=DOC_KEY)
        expected = hmac.new(DOC_KEY.encode(), canonical.encode(), hashlib.sha256).hexdigest().upper()
        assert keyed_hash(canonical, DOC_KEY, KeyedHashAlgorithm.HMAC_SHA256) == expected

    def test_unsupported_algorithm(self):
        with pytest.raises(UnsupportedAlgorithmError):
            keyed_hash("a=1", DOC_KEY, "SHA1")


class TestRsaSignature:
    @pytest.mark.parametrize("algorithm", [SignAlgorithm.RSA_SHA256, SignAlgorithm.RSA_SHA1])
    def test_sign_then_verify(self, merchant_keys, algorithm):
        private_pem, public_pem = merchant_keys
        signature = sign("GET\n/v3/certificates\n1554208460\nabc\n\n", private_pem, algorithm)
        assert verify_signature("GET\n/v3/certificates\n1554208460\nabc\n\n", signature, public_pem, algorithm)

    def test_tampered_message_returns_false(self, merchant_keys):
        private_pem, public_pem = merchant_keys
        signature = sign("amount=100", private_pem)
        assert verify_signature("amount=101", signature, public_pem) is False

    def test_other_key_returns_false(self, merchant_keys, platform_keys):
        signature = sign("amount=100", merchant_keys[0])
        assert verify_signature("amount=100", signature, platform_keys[1]) is False

    def test_algorithm_mismatch_returns_false(self, merchant_keys):
        private_pem, public_pem = merchant_keys
        signature = sign("amount=100", private_pem, SignAlgorithm.RSA_SHA1)
        assert verify_signature("amount=100", signature, public_pem, SignAlgorithm.RSA_SHA256) is False

    @pytest.mark.parametrize("signature", ["", "not base64!!"])
    def test_malformed_signature_raises(self, merchant_keys, signature):
        with pytest.raises(BadSignatureFormatError):
            verify_signature("amount=100", signature, merchant_keys[1])

    def test_unsupported_algorithm(self, merchant_keys):
        with pytest.raises(UnsupportedAlgorithmError):
            sign("amount=100", merchant_keys[0], "RSA-MD5")

    def test_bare_base64_keys(self, alipay_keys):
        private_pem, public_pem = alipay_keys
        bare_private = "".join(line for line in private_pem.splitlines() if "-----" not in line)
        bare_public = "".join(line for line in public_pem.splitlines() if "-----" not in line)

        signature = sign("app_id=2021000000000001", bare_private)
        assert verify_signature("app_id=2021000000000001", signature, bare_public)

    def test_certificate_public_key(self, platform_keys):
        certificate = _self_signed_certificate(platform_keys[0])
        signature = sign("1700000000\nnonce\n{}\n", platform_keys[0])
        assert verify_signature("1700000000\nnonce\n{}\n", signature, certificate)

    @pytest.mark.parametrize("key", ["", "   ", "not-a-key"])
    def test_bad_public_key(self, key):
        with pytest.raises(BadKeyError):
            load_public_key(key)

    def test_bad_private_key(self):
        with pytest.raises(BadKeyError):
            load_private_key("MIIBroken")


class TestAesGcm:
    def test_decrypt(self):
        ciphertext = _encrypt('{"out_trade_no":"ORDER20240001"}')
        assert decrypt_aes_gcm(ciphertext, GCM_KEY, GCM_NONCE, "transaction") == '{"out_trade_no":"ORDER20240001"}'

    def test_flipped_bit_raises_tag_mismatch(self):
        data = bytearray(b64decode(_encrypt("支付成功")))
        data[0] ^= 0x01
        with pytest.raises(TagMismatchError):
            decrypt_aes_gcm(b64encode(bytes(data)).decode(), GCM_KEY, GCM_NONCE, "transaction")

    def test_wrong_associated_data_raises_tag_mismatch(self):
        with pytest.raises(TagMismatchError):
            decrypt_aes_gcm(_encrypt("支付成功"), GCM_KEY, GCM_NONCE, "certificate")

    def test_tag_mismatch_is_decryption_failure(self):
        assert issubclass(TagMismatchError, DecryptionFailedError)

    @pytest.mark.parametrize(
        "ciphertext,key,nonce",
        [
            ("AAAA", GCM_KEY, GCM_NONCE),  # 短于认证标签
            ("###", GCM_KEY, GCM_NONCE),
            (None, GCM_KEY, GCM_NONCE),
            ("A" * 44, "short-key", GCM_NONCE),
            ("A" * 44, GCM_KEY, "short"),
        ],
    )
    def test_invalid_input(self, ciphertext, key, nonce):
        with pytest.raises(DecryptionFailedError):
            decrypt_aes_gcm(ciphertext, key, nonce)


class TestConstantTimeEquals:
    def test_equal(self):
        assert constant_time_equals("9A0A8659", "9A0A8659")

    def test_not_equal(self):
        assert not constant_time_equals("9A0A8659", "9A0A8658")

    def test_none(self):
        assert not constant_time_equals(None, "9A0A8659")
