from delivery_app import repository


def test_branch_menu(client):
    response = client.get("/api/branches/1/menu")

    assert response.status_code == 200
    body = response.get_json()["body"]
    assert body["branch"]["name"] == "ครัวคุณแม่ สาขาสยาม"
    names = [item["name"] for item in body["menu"]]
    assert names == ["ก๋วยเตี๋ยวต้มยำ", "ข้าวกะเพราหมูสับ", "ชาไทยเย็น"]
    assert body["menu"][0]["price"] == "60.00"
    assert [addon["name"] for addon in body["menu"][0]["add_ons"]] == ["พิเศษ", "เพิ่มไข่"]


def test_branch_menu_uses_price_override(client):
    body = client.get("/api/branches/2/menu").get_json()["body"]
    prices = {item["name"]: item["price"] for item in body["menu"]}
    assert prices["ข้าวกะเพราหมูสับ"] == "59.00"


def test_branch_menu_errors(client):
    assert client.get("/api/branches/abc/menu").status_code == 400
    missing = client.get("/api/branches/999/menu")
    assert missing.status_code == 404
    assert missing.get_json()["code"] == "NOT_FOUND"


def test_top_menu_ranks_by_ordered_quantity(app, client, user):
    with app.app_context():
        owner = repository.get_user(user["id"])
        repository.create_order(
            owner, 1, None, {"productList": [{"productId": "3", "qty": 4}, {"productId": "2", "qty": 1}]}
        )

    response = client.get("/api/branches/1/top-menu")

    assert response.status_code == 200
    assert "s-maxage=30" in response.headers["Cache-Control"]
    ids = [item["product_id"] for item in response.get_json()["body"]["menu"]]
    assert ids == [3, 2, 1]


def test_search_by_keyword(client):
    response = client.get("/api/search", query_string={"q": "tea"})

    assert response.status_code == 200
    results = response.get_json()["body"]
    assert [row["branch_id"] for row in results] == [1, 2]
    assert results[0]["products_sample"][0]["name"] == "ชาไทยเย็น"
    assert results[0]["distance_m"] is None


def test_search_orders_by_distance(client):
    # Close to the Ari branch
    results = client.get("/api/search", query_string={"q": "kaprao", "lat": 13.7800, "lng": 100.5440}).get_json()[
        "body"
    ]
    assert [row["branch_id"] for row in results] == [2, 1]
    assert results[0]["distance_m"] < results[1]["distance_m"]


def test_search_by_category(client):
    results = client.get("/api/search", query_string={"categoryId": 1}).get_json()["body"]
    assert [row["branch_id"] for row in results] == [1]
    assert results[0]["match_count"] == 1


def test_categories_and_system_config(client):
    categories = client.get("/api/categories").get_json()["body"]["categories"]
    assert [category["name"] for category in categories] == ["ก๋วยเตี๋ยว", "ข้าว", "เครื่องดื่ม"]

    config = client.get("/api/system/config").get_json()["body"]["config"]
    assert config["MAX_QTY_PER_ITEM"] == "10"
    assert config["MAXIMUM_BRANCH_ORDER"] == "1"


def test_branch_summary(client, auth_headers):
    response = client.get("/api/branch/summary", query_string={"ids": "2,1,99"}, headers=auth_headers)

    assert response.status_code == 200
    branches = response.get_json()["body"]["branches"]
    assert [branch["id"] for branch in branches] == [1, 2]
    assert branches[1]["branchIsOpen"] is True
    assert branches[1]["openHours"] is None


def test_branch_summary_requires_token(client):
    assert client.get("/api/branch/summary?ids=1").status_code == 401
