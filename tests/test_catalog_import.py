import io

import mongomock
import pytest

from commercex_portal.catalog_import import CatalogImporter, slugify

HEADER = 'Title,Category,Regular_Price,Discount_Price,Stock_Quantity,Images\n'


@pytest.fixture
def products():
    return mongomock.MongoClient().db['products']


def write_csv(tmp_path, rows):
    path = tmp_path / 'products.csv'
    path.write_text(HEADER + rows, encoding='utf-8')
    return path


def test_slugify():
    assert slugify('  Silk Saree (Red) ') == 'silk-saree-red'


def test_import_creates_then_updates_by_slug(tmp_path, products):
    path = write_csv(tmp_path, 'Silk Saree,Clothing,8900,7500,4,/a.png|/b.png\n')
    importer = CatalogImporter(products)

    first = importer.run(path)
    path.write_text(HEADER + 'Silk Saree,Clothing,9900,,6,\n', encoding='utf-8')
    second = importer.run(path)

    assert (first['created'], first['updated']) == (1, 0)
    assert (second['created'], second['updated']) == (0, 1)
    product = products.find_one({'slug': 'silk-saree'})
    assert product['regular_price'] == 9900.0
    assert product['discount_price'] is None
    assert product['stock_quantity'] == 6
    assert product['is_active'] is True


def test_image_url_defaults_to_first_image(tmp_path, products):
    CatalogImporter(products).run(write_csv(tmp_path, 'Panjabi,Clothing,2000,,3,/a.png|/b.png\n'))

    product = products.find_one()
    assert product['image_url'] == '/a.png'
    assert product['images'] == ['/a.png', '/b.png']


def test_validation_errors_block_the_whole_file(tmp_path, products):
    rows = (
        'Panjabi,Clothing,2000,2500,3,\n'
        'Sandals,Footwear,abc,,3,\n'
        'Earbuds,Electronics,2990,,1.5,\n'
        'Panjabi,Clothing,2000,,3,\n'
    )

    result = CatalogImporter(products).run(write_csv(tmp_path, rows))

    assert result['ok'] is False
    assert result['errors'] == [
        'Row 2: discount_price cannot be greater than regular_price',
        "Row 3: Invalid numeric value 'abc'",
        'Row 4: stock_quantity must be a whole number',
        "Row 5: Duplicate slug 'panjabi' in file",
    ]
    assert products.count_documents({}) == 0


def test_missing_column(tmp_path, products):
    path = tmp_path / 'products.csv'
    path.write_text('title,category\nPanjabi,Clothing\n', encoding='utf-8')

    result = CatalogImporter(products).run(path)

    assert "Row 1: Missing required column 'regular_price'" in result['errors']


def test_dry_run_writes_nothing(tmp_path, products):
    result = CatalogImporter(products).run(write_csv(tmp_path, 'Panjabi,Clothing,2000,,3,\n'), dry_run=True)

    assert result['ok'] is True
    assert products.count_documents({}) == 0


def test_unsupported_file_type(products):
    with pytest.raises(ValueError):
        CatalogImporter(products).run(io.BytesIO(b'x'), filename='products.txt')


def test_legacy_xls_is_rejected(products):
    with pytest.raises(ValueError, match='Only CSV/XLSX'):
        CatalogImporter(products).run(io.BytesIO(b'x'), filename='products.xls')


def test_upload_endpoint(client, db, make_user, login):
    make_user(email='admin@shop.test', role='admin')
    login('admin@shop.test')
    data = {'file': (io.BytesIO((HEADER + 'Panjabi,Clothing,2000,,3,\n').encode('utf-8')), 'products.csv')}

    resp = client.post('/admin/api/products/import', data=data, content_type='multipart/form-data')

    assert resp.status_code == 200
    assert resp.get_json()['created'] == 1
    assert db['products'].find_one()['slug'] == 'panjabi'
