"""
API Blueprint - PDF to Markdown conversion

Pages are charged only after the OCR engine succeeds, so a failed
conversion never costs the user anything.
"""
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from pdf2md.exceptions import InsufficientPages
from pdf2md.services.balance_service import get_pages_remaining, record_page_usage
from pdf2md.services.ocr_service import pdf_data_url
from pdf2md.services.pdf_service import count_pdf_pages, is_pdf

api_bp = Blueprint('api', __name__)


@api_bp.route('/convert', methods=['POST'])
@login_required
def convert():
    file = request.files.get('file') or request.files.get('pdf')
    if not file:
        return jsonify({'ok': False, 'error': 'No file provided'}), 400

    filename = getattr(file, 'filename', '') or 'document.pdf'
    if not is_pdf(filename, file.mimetype):
        return jsonify({'ok': False, 'error': 'File must be a PDF'}), 400

    data = file.read()
    pages = count_pdf_pages(data)

    available = get_pages_remaining(current_user.id)
    if available < pages:
        raise InsufficientPages(required=pages, available=available)

    name = filename.rsplit('.', 1)[0]
    result = current_app.extensions['ocr_client'].process_document(pdf_data_url(data), name=name, page_count=pages)

    charged, remaining = record_page_usage(current_user.id, pages)
    current_app.logger.info('Converted %s (%d pages) for user %s', filename, pages, current_user.id)

    return jsonify({
        'ok': True,
        **result.to_dict(),
        'pages': pages,
        'charged': charged,
        'pagesRemaining': remaining,
    }), 200
