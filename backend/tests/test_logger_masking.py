from app.utils.logger import mask_credentials, mask_headers


def test_secrets_keep_at_most_their_last_four_characters():
    masked = mask_credentials(
        {
            "api_key": "0123456789ab",
            "api_secret": "s3cr3t-value-that-is-long",
            "password": "pw",
            "store": "store-1",
            "nested": {"x-api-secret": "abcdefghijklmnopqrstuvwxyz"},
        }
    )

    assert masked["api_key"] == "***"
    assert masked["api_secret"] == "***long"
    assert masked["password"] == "***"
    assert masked["store"] == "store-1"
    assert masked["nested"]["x-api-secret"] == "***wxyz"


def test_sensitive_headers_are_fully_masked():
    masked = mask_headers({"Authorization": "Basic abc", "X-ShipStation-Signature": "sha256=1", "Accept": "*/*"})
    assert masked == {"Authorization": "***", "X-ShipStation-Signature": "***", "Accept": "*/*"}
