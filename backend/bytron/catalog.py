from dataclasses import dataclass
from pathlib import Path

from .errors import ArtifactMissing, InvalidProduct


@dataclass(frozen=True)
class Product:
    product_id: str
    price_usd: int
    file_name: str


PRODUCTS = {
    p.product_id: p
    for p in (
        Product("mostbet-aviator-spribe", 100, "mostbet.zip"),
        Product("1xbet-crash", 100, "crash.zip"),
        Product("1win-aviator", 100, "aviator.zip"),
        Product("luckyjet", 100, "luckyjet.zip"),
        Product("apple-of-fortune", 100, "Apple.zip"),
        Product("thimbles", 100, "thimbles.zip"),
        Product("wild-west-gold", 100, "Wild.zip"),
        Product("higher-vs-lower", 100, "Higher.zip"),
        Product("dragons-gold", 100, "Dragons.zip"),
    )
}


class Catalog:
    def __init__(self, products: dict[str, Product] | None = None):
        self.products = PRODUCTS if products is None else products

    def get(self, product_id) -> Product:
        if not isinstance(product_id, str):
            raise InvalidProduct(f"Unknown product: {product_id!r}")
        product = self.products.get(product_id.strip().lower())
        if product is None:
            raise InvalidProduct(f"Unknown product: {product_id}")
        return product

    def artifact_path(self, product: Product, files_dir: str | Path) -> Path:
        root = Path(files_dir).resolve()
        path = (root / product.file_name).resolve()
        if root not in path.parents or not path.is_file():
            raise ArtifactMissing(f"Artifact for {product.product_id} is not available")
        return path
