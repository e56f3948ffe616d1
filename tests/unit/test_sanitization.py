from utils.logger import sanitize_log_data


def test_stk_password_redaction():
    data = {"BusinessShortCode": "174379", "Password": "MTc0Mzc5YmZiMjc5ZjlhYTli", "Amount": 1500}
    sanitized = sanitize_log_data(data)

    assert sanitized["BusinessShortCode"] == "174379"
    assert sanitized["Amount"] == 1500
    assert sanitized["Password"] == "***REDACTED***"


def test_access_token_partial_redaction():
    data = {"access_token": "c9SQxWWhmdVRlyh0zh8gZDTkubVF", "expires_in": "3599"}
    sanitized = sanitize_log_data(data)

    assert sanitized["access_token"] == "c9SQxWWh..."
    assert sanitized["expires_in"] == "3599"


def test_consumer_secret_in_nested_payload():
    data = {"auth": {"consumer_key": "qkio1BGGYAXTu2JOfm7XSXNruoZsrqEW", "consumer_secret": "osGQ364R49cXKeOYSpaOnT++rHs="}}
    sanitized = sanitize_log_data(data)

    assert sanitized["auth"]["consumer_key"] == "***REDACTED***"
    assert sanitized["auth"]["consumer_secret"] == "***REDACTED***"


def test_list_of_dicts_is_walked():
    data = {"links": [{"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=5O1"}],
            "items": [{"card_number": "4242424242424242"}]}
    sanitized = sanitize_log_data(data)

    assert sanitized["links"][0]["href"].startswith("https://www.sandbox.paypal.com")
    assert sanitized["items"][0]["card_number"] == "***REDACTED***"


def test_provider_response_unchanged_when_nothing_sensitive():
    data = {"status_code": 1, "payment_method": "Visa", "confirmation_code": "AA11BB22", "currency": "KES"}
    sanitized = sanitize_log_data(data)

    assert sanitized == data


def test_original_payload_not_mutated():
    data = {"Password": "secret"}
    sanitize_log_data(data)

    assert data["Password"] == "secret"
