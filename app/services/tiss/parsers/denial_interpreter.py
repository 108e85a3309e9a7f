"""
TISS Denial Interpreter
Fixed catalog of glosa reason codes and their recommended actions
"""

import enum
import logging
from collections import namedtuple
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


class MotivoGlosa(str, enum.Enum):
    A1 = "A1"
    A2 = "A2"
    A3 = "A3"
    A4 = "A4"
    A5 = "A5"
    A6 = "A6"
    A7 = "A7"
    A8 = "A8"
    A9 = "A9"
    A10 = "A10"
    B1 = "B1"
    B2 = "B2"
    C1 = "C1"
    OUTROS = "outros"


MotivoInfo = namedtuple("MotivoInfo", ["descricao", "acao_recomendada", "categoria"])

GLOSA_CATALOG = MappingProxyType({
    MotivoGlosa.A1: MotivoInfo(
        "Guia não preenchida corretamente",
        "Revise o preenchimento da guia e reenvie com os dados corretos",
        "administrativa",
    ),
    MotivoGlosa.A2: MotivoInfo(
        "Procedimento não coberto pelo plano",
        "Verifique a cobertura do plano ou solicite autorização especial",
        "cobertura",
    ),
    MotivoGlosa.A3: MotivoInfo(
        "Procedimento já realizado no período",
        "Apresente justificativa médica para repetição do procedimento",
        "tecnica",
    ),
    MotivoGlosa.A4: MotivoInfo(
        "Beneficiário sem cobertura ativa",
        "Confirme a situação do beneficiário com a operadora",
        "cobertura",
    ),
    MotivoGlosa.A5: MotivoInfo(
        "Carência não cumprida",
        "Aguarde o período de carência ou solicite exceção",
        "cobertura",
    ),
    MotivoGlosa.A6: MotivoInfo(
        "Cobrança em duplicidade",
        "Identifique e cancele a cobrança duplicada",
        "administrativa",
    ),
    MotivoGlosa.A7: MotivoInfo(
        "Valor acima do contratado",
        "Verifique a tabela de preços contratada",
        "valor",
    ),
    MotivoGlosa.A8: MotivoInfo(
        "Ausência de autorização prévia",
        "Solicite autorização retroativa com justificativa de urgência",
        "autorizacao",
    ),
    MotivoGlosa.A9: MotivoInfo(
        "Documentação incompleta",
        "Anexe a documentação faltante ao recurso",
        "documentacao",
    ),
    MotivoGlosa.A10: MotivoInfo(
        "Prazo de envio excedido",
        "Solicite exceção de prazo com justificativa",
        "administrativa",
    ),
    MotivoGlosa.B1: MotivoInfo(
        "CID incompatível com procedimento",
        "Revise a indicação clínica e o CID informado",
        "tecnica",
    ),
    MotivoGlosa.B2: MotivoInfo(
        "Quantidade acima do permitido",
        "Justifique a necessidade da quantidade realizada",
        "tecnica",
    ),
    MotivoGlosa.C1: MotivoInfo(
        "Profissional não cadastrado na operadora",
        "Regularize o cadastro do profissional na operadora",
        "cadastral",
    ),
    MotivoGlosa.OUTROS: MotivoInfo(
        "Outro motivo",
        "Entre em contato com a operadora para esclarecimentos",
        "outros",
    ),
})


def motivo_from_code(code: Optional[str]) -> MotivoGlosa:
    """Unknown or empty codes fall into the catch-all entry"""
    if code:
        normalized = code.strip().upper()
        for motivo in MotivoGlosa:
            if motivo.value.upper() == normalized:
                return motivo
        logger.info(f"Unknown glosa reason code '{code}', classified as outros")
    return MotivoGlosa.OUTROS


class DenialInterpreter:
    """Interpreter for TISS glosa reason codes"""

    @staticmethod
    def interpret_denial(code: Optional[str], message: Optional[str] = None) -> Dict:
        motivo = motivo_from_code(code)
        info = GLOSA_CATALOG[motivo]
        return {
            "codigo": motivo.value,
            "codigo_original": code,
            "descricao": info.descricao,
            "acao_recomendada": info.acao_recomendada,
            "categoria": info.categoria,
            "mensagem": message or info.descricao,
        }

    @classmethod
    def interpret_multiple_denials(cls, itens: Iterable) -> List[Dict]:
        """Interpret each denied item (anything with codigo_glosa and valor_glosado)"""
        result = []
        for item in itens:
            interpretation = cls.interpret_denial(item.codigo_glosa)
            interpretation["valor_glosado"] = Decimal(item.valor_glosado)
            result.append(interpretation)
        return result

    @classmethod
    def get_resolution_suggestions(cls, itens: Iterable) -> List[Dict]:
        """
        One suggestion per reason code, largest denied value first.

        Returns:
            List of dicts with codigo, descricao, acao_recomendada, valor_total
            and quantidade_itens
        """
        grouped: Dict[MotivoGlosa, Dict] = {}
        for item in itens:
            motivo = motivo_from_code(item.codigo_glosa)
            entry = grouped.get(motivo)
            if entry is None:
                info = GLOSA_CATALOG[motivo]
                entry = grouped[motivo] = {
                    "codigo": motivo.value,
                    "descricao": info.descricao,
                    "acao_recomendada": info.acao_recomendada,
                    "valor_total": Decimal("0"),
                    "quantidade_itens": 0,
                }
            entry["valor_total"] += Decimal(item.valor_glosado)
            entry["quantidade_itens"] += 1

        return sorted(grouped.values(), key=lambda entry: entry["valor_total"], reverse=True)
