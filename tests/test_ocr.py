"""
OCR Client Tests
"""
from types import SimpleNamespace

import pytest
import requests

from pdf2md.exceptions import OcrError
from pdf2md.services.ocr_service import OcrClient, parse_ocr_response, pdf_data_url

OCR_PAYLOAD = {
    'pages': [
        {'index': 1, 'markdown': 'Second page', 'images': []},
        {'index': 0, 'markdown': '# Title\n', 'images': [{'id': 'img-0.jpeg', 'image_base64': 'data:image/jpeg;base64,AAA'}]},
    ]
}


class FakeSession:
    """Replays queued responses or exceptions for session.post"""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append({'url': url, 'json': json, 'headers': headers, 'timeout': timeout})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def response(status_code=200, payload=None):
    return SimpleNamespace(status_code=status_code, json=lambda: payload)


def client_with(session, api_key='test-key', max_retries=2):
    return OcrClient('https://ocr.example.com/v1/ocr', api_key, 'mistral-ocr-latest',
                     timeout=5, max_retries=max_retries, session=session)


def test_parse_orders_pages_and_collects_images():
    result = parse_ocr_response(OCR_PAYLOAD)
    assert result.markdown == '# Title\n\nSecond page'
    assert result.images == [{'index': 0, 'id': 'img-0.jpeg', 'base64': 'data:image/jpeg;base64,AAA'}]


def test_pdf_data_url():
    assert pdf_data_url(b'%PDF') == 'data:application/pdf;base64,JVBERg=='


def test_mock_result_without_key():
    session = FakeSession()
    result = client_with(session, api_key='').process_document('data:...', name='invoice', page_count=3)
    assert result.markdown.startswith('# invoice')
    assert '3 page(s)' in result.markdown
    assert session.requests == []


def test_sends_document_request():
    session = FakeSession(response(payload=OCR_PAYLOAD))
    client_with(session).process_document('data:application/pdf;base64,AAA')

    sent = session.requests[0]
    assert sent['json']['model'] == 'mistral-ocr-latest'
    assert sent['json']['document'] == {'type': 'document_url', 'document_url': 'data:application/pdf;base64,AAA'}
    assert sent['headers']['Authorization'] == 'Bearer test-key'


def test_timeouts_are_retried():
    session = FakeSession(requests.Timeout(), response(payload=OCR_PAYLOAD))
    result = client_with(session).process_document('data:...')
    assert result.markdown.startswith('# Title')
    assert len(session.requests) == 2


def test_gives_up_after_retries():
    session = FakeSession(requests.Timeout(), requests.Timeout())
    with pytest.raises(OcrError):
        client_with(session, max_retries=1).process_document('data:...')
    assert len(session.requests) == 2


def test_connection_errors_not_retried():
    session = FakeSession(requests.ConnectionError('refused'), response(payload=OCR_PAYLOAD))
    with pytest.raises(OcrError):
        client_with(session).process_document('data:...')
    assert len(session.requests) == 1


def test_http_error():
    session = FakeSession(response(status_code=500, payload={}))
    with pytest.raises(OcrError) as excinfo:
        client_with(session).process_document('data:...')
    assert 'HTTP 500' in excinfo.value.message


def test_invalid_json():
    def broken():
        raise ValueError('not json')

    session = FakeSession(SimpleNamespace(status_code=200, json=broken))
    with pytest.raises(OcrError):
        client_with(session).process_document('data:...')
