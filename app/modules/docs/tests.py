import yaml


class TestOpenAPIDocument:

    def test_yaml_by_default(self, client):
        response = client.get("/api/openapi")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-yaml")
        assert response.headers["content-disposition"] == 'inline; filename="openapi.yaml"'

        schema = yaml.safe_load(response.text)
        assert schema["info"]["title"] == "Whop SaaS API"
        assert "/api/products" in schema["paths"]
        assert "/api/memberships/{key}/validate_license" in schema["paths"]

    def test_json_format(self, client):
        response = client.get("/api/openapi", params={"format": "json"})
        assert response.status_code == 200
        assert "/api/checkout/create" in response.json()["paths"]

    def test_unknown_format(self, client):
        assert client.get("/api/openapi", params={"format": "xml"}).status_code == 422

    def test_docs_endpoints_hidden_from_schema(self, client):
        paths = client.get("/api/openapi", params={"format": "json"}).json()["paths"]
        assert "/api/openapi" not in paths
        assert "/api/docs" not in paths


class TestSwaggerUI:

    def test_public_html(self, client):
        response = client.get("/api/docs")
        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]
        assert "/api/openapi?format=json" in response.text
