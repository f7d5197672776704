"""
Prospect industry profiles used by the lead search.
Each profile carries the Places keywords that find it and a base lead score
reflecting how energy-intensive the industry usually is.
"""
import math

LEAD_PROFILES = {
    'heavy_industry': {
        'id': 'heavy_industry',
        'label': 'Przemysł ciężki / produkcja',
        'base_score': 60,
        'keywords': [
            'factory', 'manufacturing', 'industrial plant',
            'steel plant', 'foundry', 'smelter', 'cement plant',
            'chemical plant', 'meat processing plant',
            'fabryka', 'zakład produkcyjny', 'zakład przemysłowy',
            'huta', 'odlewnia', 'cementownia', 'zakład chemiczny',
            'zakłady mięsne', 'mleczarnia', 'wytwórnia',
        ],
    },
    'logistics': {
        'id': 'logistics',
        'label': 'Logistyka / magazyny / chłodnie',
        'base_score': 50,
        'keywords': [
            'logistics center', 'distribution center', 'warehouse',
            'logistics park', 'industrial park',
            'cold storage', 'refrigerated warehouse', 'fulfillment center',
            'centrum logistyczne', 'centrum dystrybucyjne',
            'park magazynowy', 'magazyn wysokiego składowania',
            'chłodnia', 'mroźnia', 'chłodnia składowa', 'park przemysłowy',
        ],
    },
    'retail': {
        'id': 'retail',
        'label': 'Retail / centra handlowe',
        'base_score': 45,
        'keywords': [
            'shopping mall', 'shopping center', 'retail park', 'outlet center',
            'galeria handlowa', 'centrum handlowe',
            'park handlowy', 'outlet', 'dom handlowy',
        ],
    },
    'hotels_spa': {
        'id': 'hotels_spa',
        'label': 'Hotele / SPA / obiekty noclegowe',
        'base_score': 40,
        'keywords': [
            'hotel', 'motel', 'hostel',
            'pensjonat', 'zajazd', 'ośrodek wypoczynkowy', 'noclegi',
        ],
    },
    'restaurants': {
        'id': 'restaurants',
        'label': 'Restauracje / gastronomia',
        'base_score': 30,
        'keywords': [
            'restaurant', 'steakhouse', 'seafood restaurant',
            'fine dining', 'grill house', 'barbecue restaurant', 'pizzeria', 'bistro',
            'restauracja', 'karczma', 'restauracja hotelowa', 'tawerna',
        ],
    },
    'bakeries': {
        'id': 'bakeries',
        'label': 'Piekarnie / cukiernie / produkcja żywności',
        'base_score': 40,
        'keywords': [
            'bakery', 'industrial bakery', 'bread factory',
            'confectionery', 'pastry shop',
            'piekarnia', 'piekarnia przemysłowa', 'cukiernia',
            'zakład piekarniczy', 'zakład cukierniczy',
            'ciastkarnia', 'produkcja pieczywa',
        ],
    },
    'agro_farm': {
        'id': 'agro_farm',
        'label': 'Rolnictwo / Hodowla',
        'base_score': 35,
        'keywords': [
            'gospodarstwo rolne', 'ferma drobiu', 'ferma kur',
            'ferma trzody', 'ferma bydła', 'obora',
            'kurnik', 'szklarnia', 'uprawa warzyw', 'sad', 'gospodarstwo ogrodnicze',
            'hodowla', 'drób', 'trzoda', 'producent rolny',
        ],
    },
    'agro_meat': {
        'id': 'agro_meat',
        'label': 'Przetwórstwo mięsne / Masarnie',
        'base_score': 35,
        'keywords': [
            'masarnia', 'zakład mięsny', 'ubojnia', 'przetwórstwo mięsne',
            'rzeźnia', 'wędliniarstwo', 'skup żywca',
        ],
    },
    'energy_services': {
        'id': 'energy_services',
        'label': 'Usługi energochłonne',
        'base_score': 35,
        'keywords': [
            'industrial laundry', 'laundry service', 'dry cleaning',
            'printing house', 'print shop',
            'data center', 'server room',
            'car wash', 'automatic car wash',
            'pralnia', 'pralnia przemysłowa', 'pralnia wodna', 'magiel',
            'pralnia chemiczna', 'drukarnia', 'drukarnia offsetowa',
            'druk cyfrowy', 'serwerownia',
            'myjnia samochodowa', 'myjnia automatyczna', 'myjnia bezdotykowa',
        ],
    },
    'services': {
        'id': 'services',
        'label': 'Usługi ogólne',
        'base_score': 15,
        'keywords': [
            'hair salon', 'barber shop', 'beauty salon', 'spa',
            'gym', 'fitness club', 'office', 'coworking',
            'fryzjer', 'salon fryzjerski', 'barber',
            'salon kosmetyczny', 'gabinet kosmetyczny',
            'biuro',
        ],
    },
    'transport': {
        'id': 'transport',
        'label': 'Firmy transportowe',
        'base_score': 40,
        'keywords': [
            'transport company', 'logistics company', 'freight', 'trucking', 'shipping company',
            'firma transportowa', 'usługi transportowe', 'spedycja', 'przewozy',
            'transport ciężarowy', 'baza transportowa',
        ],
    },
    'mushrooms': {
        'id': 'mushrooms',
        'label': 'Producenci pieczarek',
        'base_score': 45,
        'keywords': [
            'mushroom farm', 'mushroom producer', 'fungiculture',
            'pieczarkarnia', 'producent pieczarek', 'uprawa pieczarek', 'hodowla grzybów',
        ],
    },
    'footwear': {
        'id': 'footwear',
        'label': 'Producenci obuwia',
        'base_score': 40,
        'keywords': [
            'footwear manufacturer', 'shoe factory', 'shoe maker',
            'producent obuwia', 'fabryka obuwia', 'zakład obuwniczy', 'szewc', 'produkcja butów',
        ],
    },
    'fruit_veg_processing': {
        'id': 'fruit_veg_processing',
        'label': 'Przetwórstwo owoców i warzyw',
        'base_score': 45,
        'keywords': [
            'fruit processing', 'vegetable processing', 'food processing plant',
            'przetwórstwo owocowo-warzywne', 'zakład przetwórstwa', 'producent mrożonek',
            'produkcja soków', 'przetwory', 'chłodnia owoców',
        ],
    },
    'wood_furniture': {
        'id': 'wood_furniture',
        'label': 'Branża drzewna / meblarska',
        'base_score': 40,
        'keywords': [
            'furniture manufacturer', 'woodworking', 'carpentry',
            'producent mebli', 'fabryka mebli', 'zakład stolarski', 'meble na wymiar',
            'stolarz', 'produkcja mebli',
        ],
    },
    'packaging': {
        'id': 'packaging',
        'label': 'Branża opakowań / folii / tworzyw',
        'base_score': 40,
        'keywords': [
            'packaging manufacturer', 'plastic packaging', 'plastic factory',
            'producent opakowań', 'opakowania foliowe', 'tworzywa sztuczne', 'produkcja folii',
            'zakład tworzyw sztucznych', 'wtryskownia',
        ],
    },
    'windows_doors': {
        'id': 'windows_doors',
        'label': 'Branża budowlana: okna / drzwi',
        'base_score': 40,
        'keywords': [
            'window manufacturer', 'door manufacturer', 'joinery',
            'producent okien', 'producent drzwi', 'stolarka okienna', 'stolarka drzwiowa',
            'fabryka okien',
        ],
    },
    'fitness': {
        'id': 'fitness',
        'label': 'Branża Fitness',
        'base_score': 30,
        'keywords': [
            'fitness club', 'gym', 'sports center', 'health club',
            'klub fitness', 'siłownia', 'centrum sportowe', 'klub sportowy', 'trening personalny',
        ],
    },
    'sawmills': {
        'id': 'sawmills',
        'label': 'Tartaki / Obróbka drewna',
        'base_score': 45,
        'keywords': [
            'sawmill', 'lumber mill', 'wood processing', 'timber industry',
            'tartak', 'obróbka drewna', 'zakład drzewny', 'przecieranie drewna', 'skład drewna',
        ],
    },
    'developers': {
        'id': 'developers',
        'label': 'Deweloperzy',
        'base_score': 50,
        'keywords': [
            'real estate developer', 'housing developer', 'construction company',
            'deweloper', 'firma deweloperska', 'budownictwo mieszkaniowe',
            'inwestycje budowlane', 'biuro sprzedaży mieszkań',
        ],
    },
}

DEFAULT_KEYWORD = 'manufacturing|factory|industrial'

# Places keyword strings get unreliable past a handful of alternatives
MAX_KEYWORDS = 6

KEYWORD_MATCH_BONUS = 20
MAX_POPULARITY_BONUS = 20


def parse_profile_ids(value):
    """'logistics,retail' -> ['logistics', 'retail'], dropping unknown ids."""
    if not value:
        return []
    return [p.strip() for p in value.split(',') if p.strip() in LEAD_PROFILES]


def search_keyword(profile_ids):
    """Pipe-joined Places keyword for the selected profiles."""
    keywords = []
    for pid in profile_ids:
        for kw in LEAD_PROFILES[pid]['keywords']:
            if kw not in keywords:
                keywords.append(kw)
    if not keywords:
        return DEFAULT_KEYWORD
    return '|'.join(keywords[:MAX_KEYWORDS])


def score_place(place, profile_ids):
    """
    Lead score for a Places result: best matching profile's base score, plus a
    bonus when the name contains one of its keywords, plus up to 20 points for
    review volume. Returns (profile_id, score); profile is None without profiles.
    """
    name = (place.get('name') or '').lower()
    best_profile, best_score = None, 0
    for pid in profile_ids:
        profile = LEAD_PROFILES[pid]
        score = profile['base_score']
        if any(kw.lower() in name for kw in profile['keywords']):
            score += KEYWORD_MATCH_BONUS
        if best_profile is None or score > best_score:
            best_profile, best_score = pid, score
    ratings = place.get('user_ratings_total') or 0
    popularity = min(MAX_POPULARITY_BONUS, int(math.log10(ratings + 1) * 8))
    return best_profile, best_score + popularity
